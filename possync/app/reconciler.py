"""
Sync reconciler: pushes local orders to the remote order service.

Orders without a server id are created with their full payload. Orders that
already exist remotely get an envelope update (status, meta, note, billing)
and then one dedicated call per facet that changed locally, so a line item
edit never overwrites a coupon edit made elsewhere and vice versa.

All work for one order runs under a per-order lock. A second caller waits
for the first and then observes its result instead of issuing a duplicate
create.
"""

from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .errors import OrderNotFound, RemoteOrderError
from .locks import KeyedLock
from .logs import json_log
from .models import CouponLine, LineItem, LocalOrder, MetaEntry, OrderData, ShippingLine, SyncResult
from .order_store import LocalOrderStore
from .remote import RemoteOrderService
from .retry_queue import RetryQueue
from .validation import FACETS


def _money(value) -> Optional[str]:
    return None if value is None else str(value)


def line_item_payload(li: LineItem, with_id: bool = True) -> dict:
    out = {
        "name": li.name,
        "product_id": li.product_id,
        "variation_id": li.variation_id,
        "quantity": li.quantity,
    }
    if li.price is not None:
        out["price"] = _money(li.price)
    if with_id and li.id:
        out = {"id": li.id, **out}
    return out


def shipping_line_payload(sl: ShippingLine) -> dict:
    out = {
        "method_id": sl.method_id,
        "instance_id": sl.instance_id,
        "method_title": sl.method_title,
        "total": sl.total,
        "total_tax": sl.total_tax,
    }
    if sl.id:
        out = {"id": sl.id, **out}
    return out


def coupon_line_payload(cl: CouponLine) -> dict:
    out = {"code": cl.code, "discount": cl.discount, "discount_tax": cl.discount_tax}
    if cl.id:
        out = {"id": cl.id, **out}
    return out


def meta_payload(meta: Iterable[MetaEntry]) -> List[dict]:
    return [m.model_dump(exclude_none=True) if m.id else {"key": m.key, "value": m.value} for m in meta]


def build_create_payload(data: OrderData) -> dict:
    return {
        "status": data.status,
        "customer_id": data.customer_id,
        "line_items": [line_item_payload(li) for li in data.line_items],
        "shipping_lines": [shipping_line_payload(sl) for sl in data.shipping_lines],
        "coupon_lines": [coupon_line_payload(cl) for cl in data.coupon_lines],
        "customer_note": data.customer_note,
        "billing": data.billing.model_dump(),
        "meta_data": meta_payload(data.meta_data),
    }


def build_update_payload(data: OrderData) -> dict:
    # Facets go through their own calls; see SyncReconciler.push_facet.
    return {
        "status": data.status,
        "meta_data": meta_payload(data.meta_data),
        "customer_note": data.customer_note,
        "billing": data.billing.model_dump(),
    }


def _error_message(ex: Exception) -> str:
    return str(ex) or ex.__class__.__name__


class SyncReconciler:
    def __init__(
        self,
        store: LocalOrderStore,
        queue: RetryQueue,
        remote: RemoteOrderService,
        locks: Optional[KeyedLock] = None,
        sync_statuses: Optional[Iterable[str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.queue = queue
        self.remote = remote
        self.locks = locks or KeyedLock()
        self.sync_statuses = frozenset(sync_statuses or ())
        self.clock = clock or store.clock

    def _gated(self, order: LocalOrder) -> bool:
        return bool(self.sync_statuses) and order.status not in self.sync_statuses

    # -- single order --------------------------------------------------------

    async def sync_order(self, frontend_id: str, force: bool = False) -> SyncResult:
        async with self.locks.hold(frontend_id):
            try:
                return await self._sync_order(frontend_id, force)
            except OrderNotFound:
                # Deleted while the request was in flight.
                await self.queue.dequeue(frontend_id)
                return SyncResult(success=False, frontend_id=frontend_id, error="not found")

    async def _sync_order(self, frontend_id: str, force: bool) -> SyncResult:
        order = await self.store.find(frontend_id)
        if order is None:
            await self.queue.dequeue(frontend_id)
            return SyncResult(success=False, frontend_id=frontend_id, error="not found")

        if self._gated(order):
            return SyncResult(success=True, frontend_id=frontend_id, server_id=order.server_id, skipped=True)

        if order.sync_status == "synced" and not force:
            # Covers a crash between marking synced and dequeuing.
            await self.queue.dequeue(frontend_id)
            return SyncResult(success=True, frontend_id=frontend_id, server_id=order.server_id)

        now = self.clock()
        await self.store.update_sync_status(frontend_id, "syncing", last_sync_attempt=now)
        revision = order.revision

        try:
            if order.server_id is None:
                op = "create"
                remote_order = await self.remote.create_order(
                    build_create_payload(order.data),
                    idempotency_key=f"pos-{frontend_id}",
                )
                if not remote_order.id:
                    raise RemoteOrderError("create response carried no order id")
                pushed = list(FACETS)
            else:
                op = "update"
                remote_order = await self.remote.update_order(order.server_id, build_update_payload(order.data))
                pushed = []
                for facet in order.pending_facets:
                    remote_order = await self._send_facet(order, facet)
                    pushed.append(facet)
        except Exception as ex:
            msg = _error_message(ex)
            json_log("warning", "sync.order.failed", frontend_id=frontend_id, server_id=order.server_id, error=msg)
            await self.store.update_sync_status(frontend_id, "error", error=msg, last_sync_attempt=now)
            await self.queue.enqueue(frontend_id, msg, now)
            return SyncResult(success=False, frontend_id=frontend_id, server_id=order.server_id, error=msg)

        server_id = order.server_id or remote_order.id
        await self.store.update_sync_status(frontend_id, "synced", server_id=server_id, last_sync_attempt=now)
        current = await self.store.fold_remote(frontend_id, remote_order, revision)
        if current.revision == revision:
            await self.store.clear_pending_facets(frontend_id, pushed)
        else:
            # Edited while the request was in flight; push the newer state next pass.
            await self.store.update_sync_status(frontend_id, "local")
        await self.queue.dequeue(frontend_id)
        json_log("info", "sync.order.synced", frontend_id=frontend_id, server_id=server_id, op=op, facets=pushed)
        return SyncResult(success=True, frontend_id=frontend_id, server_id=server_id)

    # -- facets --------------------------------------------------------------

    async def _send_facet(self, order: LocalOrder, facet: str) -> OrderData:
        server_id = order.server_id
        data = order.data
        if facet == "line_items":
            server = await self.remote.get_order(server_id)
            if server is None:
                raise RemoteOrderError(f"order {server_id} not found on server", status_code=404)
            # The remote API has no "replace lines": zero the old ones, add ours fresh.
            payload = [{"id": li.id, "quantity": 0} for li in server.line_items if li.id and li.quantity > 0]
            payload += [line_item_payload(li, with_id=False) for li in data.line_items]
        elif facet == "shipping_lines":
            server = await self.remote.get_order(server_id)
            if server is None:
                raise RemoteOrderError(f"order {server_id} not found on server", status_code=404)
            keep = {sl.id for sl in data.shipping_lines if sl.id}
            payload = [
                {"id": sl.id, "method_id": None}
                for sl in server.shipping_lines
                if sl.id and sl.id not in keep and sl.method_id
            ]
            payload += [shipping_line_payload(sl) for sl in data.shipping_lines]
        elif facet == "coupon_lines":
            payload = [{"code": cl.code} for cl in data.coupon_lines]
        else:
            raise ValueError(f"unknown facet: {facet}")
        return await self.remote.update_order(server_id, {facet: payload})

    async def push_facet(self, frontend_id: str, facet: str) -> SyncResult:
        """
        Push one facet of an order the server already knows. Orders without a
        server id are skipped; their create carries every facet.
        """
        if facet not in FACETS:
            raise ValueError(f"unknown facet: {facet}")
        async with self.locks.hold(frontend_id):
            order = await self.store.find(frontend_id)
            if order is None:
                return SyncResult(success=False, frontend_id=frontend_id, error="not found")
            if order.server_id is None or self._gated(order):
                return SyncResult(success=True, frontend_id=frontend_id, server_id=order.server_id, skipped=True)

            now = self.clock()
            revision = order.revision
            try:
                remote_order = await self._send_facet(order, facet)
            except Exception as ex:
                msg = _error_message(ex)
                json_log("warning", "sync.facet.failed", frontend_id=frontend_id, facet=facet, error=msg)
                try:
                    await self.store.mark_facets_pending(frontend_id, [facet])
                    await self.store.update_sync_status(frontend_id, "error", error=msg, last_sync_attempt=now)
                except OrderNotFound:
                    return SyncResult(success=False, frontend_id=frontend_id, error="not found")
                await self.queue.enqueue(frontend_id, msg, now)
                return SyncResult(success=False, frontend_id=frontend_id, server_id=order.server_id, error=msg)

            try:
                current = await self.store.fold_remote(frontend_id, remote_order, revision)
                if current.revision == revision:
                    current = await self.store.clear_pending_facets(frontend_id, [facet])
            except OrderNotFound:
                return SyncResult(success=False, frontend_id=frontend_id, error="not found")
            json_log("info", "sync.facet.pushed", frontend_id=frontend_id, server_id=order.server_id, facet=facet)
            return SyncResult(success=True, frontend_id=frontend_id, server_id=order.server_id)

    # -- sweeps --------------------------------------------------------------

    async def process_sync_queue(self, now: Optional[datetime] = None) -> List[SyncResult]:
        results: List[SyncResult] = []
        due = await self.queue.due(now)
        for entry in due:
            results.append(await self.sync_order(entry.frontend_id))

        # Orders never attempted (or edited back to local) and not under backoff.
        attempted = {e.frontend_id for e in due}
        queued = {e.frontend_id for e in await self.queue.entries()}
        for order in await self.store.list(sync_status="local", oldest_first=True):
            if order.frontend_id in attempted or order.frontend_id in queued:
                continue
            results.append(await self.sync_order(order.frontend_id))
        return results

    async def sync_all_pending(self) -> List[SyncResult]:
        results: List[SyncResult] = []
        for order in await self.store.list_needing_sync():
            results.append(await self.sync_order(order.frontend_id))
        return results

    async def pull_remote_orders(self, **params) -> dict:
        remotes = await self.remote.list_orders(**params)
        summary = await self.store.upsert_server_orders(remotes)
        json_log("info", "sync.pull.done", fetched=len(remotes), **summary)
        return summary
