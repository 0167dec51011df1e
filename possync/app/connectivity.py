import time
from typing import Optional

import httpx

from .config import settings
from .logs import json_log


class ConnectivityProbe:
    """
    "Device is online" signal for the sync loop: a short GET against the
    remote base URL. Any HTTP response counts as reachable; only transport
    failures mean offline.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url if base_url is not None else settings.api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.online_probe_timeout_seconds
        self.last_latency_ms: Optional[int] = None
        self.last_error: Optional[str] = None

    async def __call__(self) -> bool:
        if not self.base_url:
            self.last_error = "missing api_base_url"
            return False
        started = time.time()
        try:
            async with httpx.AsyncClient(timeout=max(0.2, float(self.timeout or 1.0))) as client:
                await client.get(self.base_url)
        except httpx.HTTPError as ex:
            self.last_latency_ms = int((time.time() - started) * 1000)
            if self.last_error is None:
                json_log("warning", "sync.offline", error=str(ex), url=self.base_url)
            self.last_error = str(ex)
            return False
        self.last_latency_ms = int((time.time() - started) * 1000)
        self.last_error = None
        return True
