import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        # Local order database (SQLite). The UI reads and writes only through it.
        self.db_path = (os.getenv('POS_DB_PATH') or '').strip() or os.path.join(os.getcwd(), 'pos.sqlite')
        # Remote order service, e.g. "https://shop.example.com/wp-json/wc/v3".
        self.api_base_url = (os.getenv('POS_API_BASE_URL') or '').strip().rstrip('/')
        self.consumer_key = (os.getenv('POS_CONSUMER_KEY') or '').strip()
        self.consumer_secret = (os.getenv('POS_CONSUMER_SECRET') or '').strip()
        self.http_timeout_seconds = _env_float('POS_HTTP_TIMEOUT_SECONDS', 10.0)
        self.sync_interval_seconds = _env_float('POS_SYNC_INTERVAL_SECONDS', 30.0)
        self.online_probe_timeout_seconds = _env_float('POS_ONLINE_PROBE_TIMEOUT_SECONDS', 2.0)
        self.id_max_attempts = _env_int('POS_ID_MAX_ATTEMPTS', 10)
        # Optional status gate, e.g. "processing,completed". Empty means every
        # order is pushed based on its sync status alone.
        self.sync_only_statuses = self._split_csv(
            os.getenv('POS_SYNC_ONLY_STATUSES', '').strip().lower(),
            default=[],
        )
        self.cors_origins = self._split_csv(
            os.getenv("POS_CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"


settings = Settings()
