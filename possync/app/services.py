from typing import Optional

from .config import Settings, settings as default_settings
from .connectivity import ConnectivityProbe
from .db import open_database
from .locks import KeyedLock
from .order_ops import OrderOperations
from .order_store import LocalOrderStore
from .reconciler import SyncReconciler
from .remote import RemoteOrderService
from .retry_queue import RetryQueue
from ..workers.sync_loop import SyncLoop


class Services:
    """Everything the agent and the worker share, wired against one database."""

    def __init__(
        self,
        conn,
        remote: RemoteOrderService,
        settings: Settings = default_settings,
        is_online=None,
    ):
        self.settings = settings
        self.conn = conn
        self.remote = remote
        self.store = LocalOrderStore(conn, id_max_attempts=settings.id_max_attempts)
        self.queue = RetryQueue(conn, clock=self.store.clock)
        self.locks = KeyedLock()
        self.reconciler = SyncReconciler(
            self.store,
            self.queue,
            remote,
            locks=self.locks,
            sync_statuses=settings.sync_only_statuses,
        )
        self.ops = OrderOperations(self.store, self.reconciler)
        self.loop = SyncLoop(
            self.reconciler,
            interval=settings.sync_interval_seconds,
            is_online=is_online or ConnectivityProbe(),
        )

    async def aclose(self) -> None:
        await self.loop.stop()
        await self.remote.aclose()
        self.conn.close()


def build_services(
    db_path: Optional[str] = None,
    settings: Settings = default_settings,
    remote: Optional[RemoteOrderService] = None,
    is_online=None,
) -> Services:
    conn = open_database(db_path or settings.db_path)
    return Services(conn, remote or RemoteOrderService(), settings=settings, is_online=is_online)
