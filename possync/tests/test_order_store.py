import asyncio
from datetime import datetime, timezone

import pytest

from possync.app import frontend_id as ids
from possync.app.errors import OrderNotFound
from possync.app.models import FRONTEND_ID_META_KEY, SERVER_ID_META_KEY


def _meta(order, key):
    return [m.value for m in order.data.meta_data if m.key == key]


def test_create_uses_default_skeleton(store):
    order = asyncio.run(store.create())
    assert ids.validate_format(order.frontend_id)
    assert order.status == "draft"
    assert order.sync_status == "local"
    assert order.server_id is None
    assert order.data.status == "pending"
    assert order.data.line_items == []
    assert order.data.total == "0.00"
    assert _meta(order, FRONTEND_ID_META_KEY) == [order.frontend_id]
    assert order.created_at == order.updated_at


def test_get_missing_raises_and_find_returns_none(store):
    with pytest.raises(OrderNotFound):
        asyncio.run(store.get("ZZZZZZ"))
    assert asyncio.run(store.find("ZZZZZZ")) is None
    assert asyncio.run(store.get_by_server_id(42)) is None


def test_update_merges_billing_and_meta_and_keeps_frontend_id(store, clock):
    async def scenario():
        order = await store.create()
        clock.advance(5)
        await store.update(order.frontend_id, {"billing": {"first_name": "Ana"}, "customer_note": "no onions"})
        await store.update(order.frontend_id, {"billing": {"phone": "555"}})
        return await store.update(
            order.frontend_id,
            {
                "meta_data": [
                    {"key": "table", "value": "T4"},
                    {"key": FRONTEND_ID_META_KEY, "value": "WRONG1"},
                ]
            },
        )

    order = asyncio.run(scenario())
    assert order.data.billing.first_name == "Ana"
    assert order.data.billing.phone == "555"
    assert order.data.customer_note == "no onions"
    assert _meta(order, "table") == ["T4"]
    assert _meta(order, FRONTEND_ID_META_KEY) == [order.frontend_id]
    assert order.revision == 3
    assert order.updated_at > order.created_at


def test_update_mirrors_status_into_wire_status(store):
    async def scenario():
        order = await store.create()
        await store.update(order.frontend_id, {"status": "processing"})
        processing = await store.get(order.frontend_id)
        await store.update(order.frontend_id, {"status": "draft"})
        return processing, await store.get(order.frontend_id)

    processing, draft = asyncio.run(scenario())
    assert (processing.status, processing.data.status) == ("processing", "processing")
    assert (draft.status, draft.data.status) == ("draft", "pending")


def test_update_line_items_recomputes_totals(store):
    async def scenario():
        order = await store.create()
        await store.update(
            order.frontend_id,
            {
                "line_items": [
                    {"name": "Latte", "product_id": 1, "quantity": 2, "price": "3.50"},
                    {"name": "Bagel", "product_id": 2, "quantity": 1, "price": "2.25"},
                ],
                "shipping_lines": [{"method_id": "flat_rate", "method_title": "Delivery", "total": "4.00"}],
            },
        )
        return await store.update(order.frontend_id, {"discount_total": "1.00"})

    order = asyncio.run(scenario())
    assert order.data.subtotal == "9.25"
    assert order.data.total == "12.25"


def test_update_facets_replace_wholesale(store):
    async def scenario():
        order = await store.create({"line_items": [{"product_id": 1, "quantity": 1, "price": "1"}]})
        return await store.update(order.frontend_id, {"line_items": [{"product_id": 2, "quantity": 3, "price": "1"}]})

    order = asyncio.run(scenario())
    assert [(li.product_id, li.quantity) for li in order.data.line_items] == [(2, 3)]


def test_update_unknown_order_raises(store):
    with pytest.raises(OrderNotFound):
        asyncio.run(store.update("NOPE00", {"customer_note": "x"}))


def test_mark_dirty_records_facets_and_reopens_synced_orders(store):
    async def scenario():
        order = await store.create()
        await store.update_sync_status(order.frontend_id, "synced", server_id=77)
        return await store.update(
            order.frontend_id,
            {"coupon_lines": [{"code": "ten"}], "customer_note": "hi"},
            mark_dirty=True,
        )

    order = asyncio.run(scenario())
    assert order.sync_status == "local"
    assert order.pending_facets == ["coupon_lines"]


def test_update_sync_status_stamps_server_id_once(store):
    async def scenario():
        order = await store.create()
        fid = order.frontend_id
        await store.update_sync_status(fid, "syncing")
        await store.update_sync_status(fid, "synced", server_id=501)
        await store.update_sync_status(fid, "local")
        again = await store.update_sync_status(fid, "synced", server_id=999)
        return again, await store.get_by_server_id(501)

    order, by_server = asyncio.run(scenario())
    assert order.server_id == 501
    assert order.data.id == 501
    assert _meta(order, SERVER_ID_META_KEY) == [501]
    assert by_server.frontend_id == order.frontend_id


def test_sync_error_kept_only_for_error_status(store, clock):
    async def scenario():
        order = await store.create()
        fid = order.frontend_id
        failed = await store.update_sync_status(fid, "error", error="boom", last_sync_attempt=clock())
        cleared = await store.update_sync_status(fid, "syncing")
        return failed, cleared

    failed, cleared = asyncio.run(scenario())
    assert failed.sync_error == "boom"
    assert failed.last_sync_attempt == datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert cleared.sync_error is None


def test_list_filters_and_orders_newest_first(store, clock):
    async def scenario():
        a = await store.create()
        clock.advance(1)
        b = await store.create()
        clock.advance(1)
        c = await store.create()
        await store.update(a.frontend_id, {"status": "completed"})
        await store.update_sync_status(b.frontend_id, "error", error="x")
        return (
            a,
            b,
            c,
            await store.list(),
            await store.list(status="completed"),
            await store.list(sync_status=["local", "error"], limit=2),
            await store.list_needing_sync(),
        )

    a, b, c, everything, completed, limited, needing = asyncio.run(scenario())
    # Editing a does not move it to the top.
    assert [o.frontend_id for o in everything] == [c.frontend_id, b.frontend_id, a.frontend_id]
    assert [o.frontend_id for o in completed] == [a.frontend_id]
    assert [o.frontend_id for o in limited] == [c.frontend_id, b.frontend_id]
    assert [o.frontend_id for o in needing] == [a.frontend_id, b.frontend_id, c.frontend_id]


def test_list_limit_zero_returns_nothing(store):
    async def scenario():
        await store.create()
        return await store.list(limit=0)

    assert asyncio.run(scenario()) == []


def test_counts_and_pending_flags(store):
    async def scenario():
        a = await store.create()
        before = await store.has_pending_sync()
        await store.update_sync_status(a.frontend_id, "synced", server_id=1)
        return before, await store.has_pending_sync(), await store.counts_by_sync_status()

    before, after, counts = asyncio.run(scenario())
    assert before is True
    assert after is False
    assert counts == {"local": 0, "syncing": 0, "synced": 1, "error": 0}


def test_list_todays_excludes_yesterday(store, clock):
    async def scenario():
        old = await store.create()
        clock.advance(3 * 24 * 3600)
        new = await store.create()
        return old, new, await store.list_todays()

    old, new, todays = asyncio.run(scenario())
    assert [o.frontend_id for o in todays] == [new.frontend_id]


def test_reset_interrupted_uses_queue_presence(store, queue):
    async def scenario():
        a = await store.create()
        b = await store.create()
        for o in (a, b):
            await store.update_sync_status(o.frontend_id, "syncing")
        await queue.enqueue(b.frontend_id, "earlier failure")
        reset = await store.reset_interrupted()
        return reset, await store.get(a.frontend_id), await store.get(b.frontend_id)

    reset, a, b = asyncio.run(scenario())
    assert reset == 2
    assert a.sync_status == "local"
    assert b.sync_status == "error"


def test_delete_removes_order_and_queue_entry(store, queue):
    async def scenario():
        order = await store.create()
        await queue.enqueue(order.frontend_id, "x")
        deleted = await store.delete(order.frontend_id)
        return deleted, await store.find(order.frontend_id), await queue.count()

    deleted, found, queued = asyncio.run(scenario())
    assert deleted is True
    assert found is None
    assert queued == 0


def _server_order(server_id, fid=None, **extra):
    meta = [{"id": 1, "key": FRONTEND_ID_META_KEY, "value": fid}] if fid else []
    data = {
        "id": server_id,
        "status": "processing",
        "line_items": [
            {"id": 11, "name": "Tea", "product_id": 5, "quantity": 1, "price": "2.00"},
            {"id": 12, "name": "Removed", "product_id": 6, "quantity": 0, "price": "1.00"},
        ],
        "shipping_lines": [
            {"id": 21, "method_id": "pickup_location", "method_title": "Table 4", "total": "0.00"},
            {"id": 22, "method_id": "", "method_title": "", "total": "0.00"},
        ],
        "meta_data": meta,
        "total": "2.00",
        "date_created": "2024-04-30T10:00:00",
    }
    data.update(extra)
    return data


def test_import_server_order_drops_zombies_and_reuses_frontend_id(store):
    order = asyncio.run(store.import_server_order(_server_order(900, fid="SRV001")))
    assert order.frontend_id == "SRV001"
    assert order.server_id == 900
    assert order.sync_status == "synced"
    assert order.status == "processing"
    assert [li.id for li in order.data.line_items] == [11]
    assert [sl.id for sl in order.data.shipping_lines] == [21]
    assert _meta(order, SERVER_ID_META_KEY) == [900]
    assert order.created_at == datetime(2024, 4, 30, 10, 0, tzinfo=timezone.utc)


def test_upsert_server_orders_local_changes_win(store):
    async def scenario():
        synced = await store.import_server_order(_server_order(1, fid="AAA111"))
        dirty = await store.import_server_order(_server_order(2, fid="BBB222"))
        await store.update(dirty.frontend_id, {"customer_note": "local edit"}, mark_dirty=True)
        summary = await store.upsert_server_orders(
            [
                _server_order(1, fid="AAA111", customer_note="from server", status="completed"),
                _server_order(2, fid="BBB222", customer_note="from server"),
                _server_order(3),
            ]
        )
        return (
            summary,
            await store.get(synced.frontend_id),
            await store.get(dirty.frontend_id),
            await store.get_by_server_id(3),
        )

    summary, synced, dirty, imported = asyncio.run(scenario())
    assert summary == {"imported": 1, "updated": 1, "skipped": 1}
    assert synced.data.customer_note == "from server"
    assert synced.status == "completed"
    assert _meta(synced, FRONTEND_ID_META_KEY) == ["AAA111"]
    assert dirty.data.customer_note == "local edit"
    assert imported is not None and ids.validate_format(imported.frontend_id)
