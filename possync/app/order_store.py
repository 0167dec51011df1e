"""
Local order store.

The durable, queryable record of every order and the single source of truth
for the UI. All reads and writes are keyed by frontend id; the server id is a
secondary lookup.

Each method runs its SQLite statements without yielding to the event loop,
so every store call is atomic with respect to other tasks. `update` is the
serialization point for concurrent facet edits: facets replace per array,
billing merges per field and meta_data merges per key, so edits to different
facets commute.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Union

from . import frontend_id as ids
from .db import to_db_ts, transaction, utcnow
from .errors import OrderNotFound
from .models import (
    FRONTEND_ID_META_KEY,
    SERVER_ID_META_KEY,
    LocalOrder,
    OrderData,
    OrderPatch,
)
from .order_utils import calculate_order_total, calculate_subtotal
from .validation import FACETS, ORDER_STATUSES, SYNC_STATUSES

_ORDER_COLUMNS = (
    "frontend_id, server_id, status, sync_status, data_json, created_at, updated_at, "
    "last_sync_attempt, sync_error, revision, pending_facets"
)


def wire_status(status: str) -> str:
    # "draft" only exists locally; the remote service knows it as pending.
    return "pending" if status == "draft" else status


def merge_meta(existing: list, updates: Optional[list], frontend_id: str) -> list:
    merged = [dict(m) for m in (existing or [])]
    for upd in updates or []:
        idx = next((i for i, m in enumerate(merged) if m.get("key") == upd.get("key")), None)
        if idx is None:
            merged.append(dict(upd))
        else:
            merged[idx] = dict(upd)
    # pos_frontend_id must always be present and always name this order.
    own = next((m for m in merged if m.get("key") == FRONTEND_ID_META_KEY), None)
    if own is None:
        merged.append({"key": FRONTEND_ID_META_KEY, "value": frontend_id})
    elif own.get("value") != frontend_id:
        own["value"] = frontend_id
    return merged


def _drop_zombies(data: dict) -> dict:
    # The remote service may keep lines it was asked to delete.
    data["line_items"] = [li for li in (data.get("line_items") or []) if int(li.get("quantity") or 0) > 0]
    data["shipping_lines"] = [
        sl for sl in (data.get("shipping_lines") or [])
        if (sl.get("method_id") or "") and (sl.get("method_title") or "")
    ]
    return data


def _as_list(value) -> Optional[list]:
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _parse_remote_ts(raw) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LocalOrderStore:
    def __init__(
        self,
        conn: sqlite3.Connection,
        clock: Optional[Callable[[], datetime]] = None,
        id_max_attempts: int = ids.DEFAULT_MAX_ATTEMPTS,
    ):
        self.conn = conn
        self.clock = clock or utcnow
        self.id_max_attempts = id_max_attempts

    # -- row mapping ---------------------------------------------------------

    def _row_to_order(self, row) -> LocalOrder:
        return LocalOrder(
            frontend_id=row["frontend_id"],
            server_id=row["server_id"],
            status=row["status"],
            sync_status=row["sync_status"],
            data=OrderData.model_validate_json(row["data_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_sync_attempt=row["last_sync_attempt"],
            sync_error=row["sync_error"],
            revision=int(row["revision"] or 0),
            pending_facets=json.loads(row["pending_facets"] or "[]"),
        )

    def _params(self, order: LocalOrder) -> tuple:
        return (
            order.frontend_id,
            order.server_id,
            order.status,
            order.sync_status,
            order.data.model_dump_json(),
            to_db_ts(order.created_at),
            to_db_ts(order.updated_at),
            to_db_ts(order.last_sync_attempt),
            order.sync_error,
            order.revision,
            json.dumps(list(order.pending_facets)),
        )

    def _insert(self, order: LocalOrder) -> None:
        with transaction(self.conn) as cur:
            cur.execute(
                f"INSERT INTO orders ({_ORDER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._params(order),
            )

    def _save(self, order: LocalOrder) -> None:
        params = self._params(order)
        with transaction(self.conn) as cur:
            cur.execute(
                """
                UPDATE orders
                SET server_id = ?, status = ?, sync_status = ?, data_json = ?, created_at = ?,
                    updated_at = ?, last_sync_attempt = ?, sync_error = ?, revision = ?, pending_facets = ?
                WHERE frontend_id = ?
                """,
                params[1:] + (params[0],),
            )
            if cur.rowcount == 0:
                raise OrderNotFound(order.frontend_id)

    def _fetch(self, frontend_id: str) -> Optional[LocalOrder]:
        row = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE frontend_id = ?",
            (frontend_id,),
        ).fetchone()
        return self._row_to_order(row) if row else None

    def _load(self, frontend_id: str) -> LocalOrder:
        order = self._fetch(frontend_id)
        if order is None:
            raise OrderNotFound(frontend_id)
        return order

    # -- reads ---------------------------------------------------------------

    async def exists(self, frontend_id: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM orders WHERE frontend_id = ? LIMIT 1", (frontend_id,)).fetchone()
        return row is not None

    async def get(self, frontend_id: str) -> LocalOrder:
        return self._load(frontend_id)

    async def find(self, frontend_id: str) -> Optional[LocalOrder]:
        return self._fetch(frontend_id)

    async def get_by_server_id(self, server_id: int) -> Optional[LocalOrder]:
        row = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE server_id = ? LIMIT 1",
            (int(server_id),),
        ).fetchone()
        return self._row_to_order(row) if row else None

    async def list(
        self,
        status=None,
        sync_status=None,
        limit: Optional[int] = None,
        oldest_first: bool = False,
    ) -> list[LocalOrder]:
        where = []
        params: list = []
        statuses = _as_list(status)
        if statuses is not None:
            where.append(f"status IN ({', '.join('?' for _ in statuses)})" if statuses else "0")
            params.extend(statuses)
        sync_statuses = _as_list(sync_status)
        if sync_statuses is not None:
            where.append(f"sync_status IN ({', '.join('?' for _ in sync_statuses)})" if sync_statuses else "0")
            params.extend(sync_statuses)
        sql = f"SELECT {_ORDER_COLUMNS} FROM orders"
        if where:
            sql += " WHERE " + " AND ".join(where)
        direction = "ASC" if oldest_first else "DESC"
        sql += f" ORDER BY created_at {direction}, rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_order(r) for r in self.conn.execute(sql, params).fetchall()]

    async def list_needing_sync(self) -> list[LocalOrder]:
        return await self.list(sync_status=["local", "error"], oldest_first=True)

    async def list_todays(self) -> list[LocalOrder]:
        local_now = self.clock().astimezone()
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        rows = self.conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE created_at >= ? ORDER BY created_at DESC, rowid DESC",
            (to_db_ts(midnight),),
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

    async def counts_by_sync_status(self) -> dict[str, int]:
        counts = {s: 0 for s in SYNC_STATUSES}
        for row in self.conn.execute("SELECT sync_status, COUNT(1) AS n FROM orders GROUP BY sync_status"):
            counts[row["sync_status"]] = int(row["n"])
        return counts

    async def has_pending_sync(self) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM orders WHERE sync_status IN ('local', 'error') LIMIT 1"
        ).fetchone()
        return row is not None

    # -- writes --------------------------------------------------------------

    async def create(self, initial_data: Union[dict, OrderData, None] = None) -> LocalOrder:
        frontend_id = await ids.generate_unique(self.exists, self.id_max_attempts)
        now = self.clock()
        if isinstance(initial_data, OrderData):
            initial = initial_data.model_dump(exclude_unset=True)
        else:
            initial = dict(initial_data or {})
        base = OrderData().model_dump()
        data = {**base, **initial}
        data["status"] = wire_status("draft")
        data["meta_data"] = merge_meta([], initial.get("meta_data"), frontend_id)
        order_data = OrderData.model_validate(data)
        if any(initial.get(f) for f in FACETS):
            order_data.subtotal = calculate_subtotal(order_data.line_items)
            order_data.total = calculate_order_total(order_data)
        order = LocalOrder(
            frontend_id=frontend_id,
            status="draft",
            sync_status="local",
            data=order_data,
            created_at=now,
            updated_at=now,
        )
        self._insert(order)
        return order

    async def update(
        self,
        frontend_id: str,
        partial: Union[dict, OrderPatch, None],
        *,
        mark_dirty: bool = False,
    ) -> LocalOrder:
        """
        Merge `partial` into the order's data.

        With `mark_dirty`, facets present in the patch are recorded as pending
        and a synced order drops back to local so the next pass pushes it.
        """
        if isinstance(partial, OrderPatch):
            patch = partial
        else:
            patch = OrderPatch.model_validate(partial or {})
        changes = patch.model_dump(exclude_unset=True)
        order = self._load(frontend_id)
        data = order.data.model_dump()

        status = changes.pop("status", None)
        if status is not None:
            order.status = status
            data["status"] = wire_status(status)

        touched_facets = []
        for facet in FACETS:
            value = changes.pop(facet, None)
            if value is not None:
                data[facet] = value
                touched_facets.append(facet)

        billing = changes.pop("billing", None)
        if billing is not None:
            data["billing"] = {**data["billing"], **billing}

        data["meta_data"] = merge_meta(data["meta_data"], changes.pop("meta_data", None), frontend_id)

        recalc = bool(touched_facets) or changes.get("discount_total") is not None
        for key, value in changes.items():
            if value is not None:
                data[key] = value

        new_data = OrderData.model_validate(data)
        if recalc:
            new_data.subtotal = calculate_subtotal(new_data.line_items)
            new_data.total = calculate_order_total(new_data)

        order.data = new_data
        order.revision += 1
        order.updated_at = self.clock()
        if mark_dirty:
            pending = set(order.pending_facets) | set(touched_facets)
            order.pending_facets = [f for f in FACETS if f in pending]
            if order.sync_status == "synced":
                order.sync_status = "local"
        self._save(order)
        return order

    async def update_sync_status(
        self,
        frontend_id: str,
        sync_status: str,
        server_id: Optional[int] = None,
        error: Optional[str] = None,
        last_sync_attempt: Optional[datetime] = None,
    ) -> LocalOrder:
        if sync_status not in SYNC_STATUSES:
            raise ValueError(f"unknown sync status: {sync_status}")
        order = self._load(frontend_id)
        order.sync_status = sync_status

        # The server id is assigned once and never changes.
        if server_id is not None and order.server_id is None:
            order.server_id = int(server_id)

        if sync_status == "synced" and server_id is not None and order.server_id is not None:
            if not any(m.key == SERVER_ID_META_KEY for m in order.data.meta_data):
                meta = [m.model_dump() for m in order.data.meta_data]
                meta.append({"key": SERVER_ID_META_KEY, "value": order.server_id})
                order.data = order.data.model_copy(update={"meta_data": OrderData(meta_data=meta).meta_data})
            order.data.id = order.server_id

        if sync_status == "error":
            if error is not None:
                order.sync_error = error
        else:
            order.sync_error = None

        if last_sync_attempt is not None:
            order.last_sync_attempt = last_sync_attempt
        order.updated_at = self.clock()
        self._save(order)
        return order

    async def fold_remote(self, frontend_id: str, remote: OrderData, revision: int) -> LocalOrder:
        """
        Merge server-assigned sub-ids into the current local facets without
        replacing them, and take the server's totals when nothing was edited
        locally since `revision`.
        """
        order = self._load(frontend_id)
        data = order.data

        server_items = [li for li in remote.line_items if li.quantity > 0 and li.id]
        for li in data.line_items:
            match = next(
                (s for s in server_items if s.product_id == li.product_id and s.variation_id == li.variation_id),
                None,
            )
            if match is not None:
                li.id = match.id
                li.subtotal = match.subtotal
                li.total = match.total

        for sl in data.shipping_lines:
            match = next((s for s in remote.shipping_lines if s.id and s.method_id == sl.method_id), None)
            if match is not None:
                sl.id = match.id

        for cl in data.coupon_lines:
            match = next((c for c in remote.coupon_lines if c.id and c.code.lower() == cl.code.lower()), None)
            if match is not None:
                cl.id = match.id
                cl.discount = match.discount
                cl.discount_tax = match.discount_tax

        if order.revision == revision:
            data.total = remote.total
            data.discount_total = remote.discount_total

        order.data = data
        self._save(order)
        return order

    async def mark_facets_pending(self, frontend_id: str, facets: Iterable[str]) -> LocalOrder:
        order = self._load(frontend_id)
        pending = set(order.pending_facets) | set(facets)
        order.pending_facets = [f for f in FACETS if f in pending]
        self._save(order)
        return order

    async def clear_pending_facets(self, frontend_id: str, facets: Iterable[str]) -> LocalOrder:
        order = self._load(frontend_id)
        done = set(facets)
        order.pending_facets = [f for f in order.pending_facets if f not in done]
        self._save(order)
        return order

    async def reset_interrupted(self) -> int:
        # Orders left "syncing" by a crash go back to a state the sweep picks up.
        with transaction(self.conn) as cur:
            cur.execute(
                """
                UPDATE orders
                SET sync_status = CASE
                      WHEN EXISTS (SELECT 1 FROM sync_queue q WHERE q.frontend_id = orders.frontend_id) THEN 'error'
                      ELSE 'local'
                    END,
                    updated_at = ?
                WHERE sync_status = 'syncing'
                """,
                (to_db_ts(self.clock()),),
            )
            return cur.rowcount

    async def delete(self, frontend_id: str) -> bool:
        with transaction(self.conn) as cur:
            cur.execute("DELETE FROM orders WHERE frontend_id = ?", (frontend_id,))
            deleted = cur.rowcount > 0
            cur.execute("DELETE FROM sync_queue WHERE frontend_id = ?", (frontend_id,))
        return deleted

    # -- server imports ------------------------------------------------------

    async def import_server_order(
        self,
        remote: Union[dict, OrderData],
        frontend_id: Optional[str] = None,
    ) -> LocalOrder:
        server = remote if isinstance(remote, OrderData) else OrderData.model_validate(remote)
        existing = await self.get_by_server_id(server.id)
        if existing is not None:
            return existing

        if not frontend_id:
            candidate = server.meta_value(FRONTEND_ID_META_KEY)
            if ids.validate_format(candidate) and not await self.exists(candidate):
                frontend_id = candidate
        if not frontend_id:
            frontend_id = await ids.generate_unique(self.exists, self.id_max_attempts)

        data = _drop_zombies(server.model_dump())
        meta = merge_meta(data["meta_data"], None, frontend_id)
        if not any(m.get("key") == SERVER_ID_META_KEY for m in meta):
            meta.append({"key": SERVER_ID_META_KEY, "value": server.id})
        data["meta_data"] = meta

        now = self.clock()
        order = LocalOrder(
            frontend_id=frontend_id,
            server_id=server.id,
            status=server.status if server.status in ORDER_STATUSES else "pending",
            sync_status="synced",
            data=OrderData.model_validate(data),
            created_at=_parse_remote_ts(server.date_created) or now,
            updated_at=now,
        )
        self._insert(order)
        return order

    async def adopt_server_order(self, frontend_id: str, server: OrderData) -> LocalOrder:
        """Link a never-confirmed local order to the server order created for it."""
        order = self._load(frontend_id)
        await self.update_sync_status(frontend_id, "synced", server_id=server.id)
        await self.fold_remote(frontend_id, server, order.revision)
        await self.clear_pending_facets(frontend_id, FACETS)
        with transaction(self.conn) as cur:
            cur.execute("DELETE FROM sync_queue WHERE frontend_id = ?", (frontend_id,))
        return self._load(frontend_id)

    async def upsert_server_orders(self, remotes: Iterable[Union[dict, OrderData]]) -> dict:
        """
        New server orders are imported and fully synced local orders are
        refreshed from the server. Orders with local changes are left alone,
        except a never-confirmed create, which is adopted.
        """
        summary = {"imported": 0, "updated": 0, "skipped": 0}
        for remote in remotes:
            server = remote if isinstance(remote, OrderData) else OrderData.model_validate(remote)
            existing = await self.get_by_server_id(server.id)
            if existing is None:
                known_fid = server.meta_value(FRONTEND_ID_META_KEY)
                local = await self.find(str(known_fid)) if known_fid else None
                if local is not None:
                    # The create reached the server but its response was lost.
                    if local.server_id is None and local.sync_status != "syncing":
                        await self.adopt_server_order(local.frontend_id, server)
                        summary["updated"] += 1
                    else:
                        summary["skipped"] += 1
                    continue
                await self.import_server_order(server, str(known_fid) if ids.validate_format(known_fid) else None)
                summary["imported"] += 1
                continue

            if existing.sync_status != "synced":
                summary["skipped"] += 1
                continue

            data = _drop_zombies(server.model_dump())
            data["meta_data"] = [m.model_dump() for m in existing.data.meta_data]
            existing.data = OrderData.model_validate(data)
            if server.status in ORDER_STATUSES:
                existing.status = server.status
            existing.updated_at = self.clock()
            self._save(existing)
            summary["updated"] += 1
        return summary
