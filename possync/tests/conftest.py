import copy
import itertools
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest


# Allow running pytest from either the repo root or from within `possync/`.
# Tests import `possync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from possync.app.db import open_database
from possync.app.errors import RemoteOrderError
from possync.app.locks import KeyedLock
from possync.app.models import OrderData
from possync.app.order_store import LocalOrderStore
from possync.app.reconciler import SyncReconciler
from possync.app.retry_queue import RetryQueue
from possync.app.services import Services


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeRemote:
    """
    In-memory stand-in for the remote order service with the same quirks:
    line items sent with quantity 0 stay on the order, shipping lines sent
    with method_id null are removed, coupons are replaced by code.
    """

    def __init__(self, start_id=1000):
        self.orders = {}
        self.calls = []
        self.fail = None
        self.gate = None
        self.closed = False
        self._ids = itertools.count(start_id)
        self._line_ids = itertools.count(1)

    def _check(self):
        if self.fail:
            raise RemoteOrderError(self.fail, status_code=500)

    async def _wait(self):
        if self.gate is not None:
            await self.gate.wait()

    def _new_line(self, li):
        li = {k: v for k, v in li.items() if k != "id"}
        li["id"] = next(self._line_ids)
        if "price" in li and "quantity" in li:
            amount = f"{float(li['price']) * int(li['quantity']):.2f}"
            li.setdefault("subtotal", amount)
            li.setdefault("total", amount)
        return li

    def _totals(self, order):
        subtotal = sum(float(li.get("price") or 0) * int(li.get("quantity") or 0) for li in order["line_items"])
        shipping = sum(float(sl.get("total") or 0) for sl in order["shipping_lines"])
        discount = sum(float(c.get("discount") or 0) for c in order["coupon_lines"])
        order["discount_total"] = f"{discount:.2f}"
        order["total"] = f"{subtotal - discount + shipping:.2f}"

    async def create_order(self, payload, idempotency_key=None):
        self.calls.append(("create", copy.deepcopy(payload), idempotency_key))
        await self._wait()
        self._check()
        order = copy.deepcopy(payload)
        order["id"] = next(self._ids)
        order["line_items"] = [self._new_line(li) for li in payload.get("line_items", [])]
        order["shipping_lines"] = [self._new_line(sl) for sl in payload.get("shipping_lines", [])]
        order["coupon_lines"] = [self._new_line(c) for c in payload.get("coupon_lines", [])]
        order["meta_data"] = [dict(m, id=next(self._line_ids)) for m in payload.get("meta_data", [])]
        self._totals(order)
        self.orders[order["id"]] = order
        return OrderData.model_validate(order)

    async def update_order(self, server_id, payload):
        self.calls.append(("update", server_id, copy.deepcopy(payload)))
        await self._wait()
        self._check()
        order = self.orders[server_id]
        for key in ("status", "customer_note", "customer_id"):
            if key in payload:
                order[key] = payload[key]
        if "billing" in payload:
            order["billing"] = {**order.get("billing", {}), **payload["billing"]}
        if "meta_data" in payload:
            for m in payload["meta_data"]:
                existing = next((x for x in order["meta_data"] if x["key"] == m["key"]), None)
                if existing is None:
                    order["meta_data"].append(dict(m, id=next(self._line_ids)))
                else:
                    existing["value"] = m["value"]
        if "line_items" in payload:
            for li in payload["line_items"]:
                if li.get("id"):
                    target = next(x for x in order["line_items"] if x["id"] == li["id"])
                    target.update(li)
                else:
                    order["line_items"].append(self._new_line(li))
        if "shipping_lines" in payload:
            for sl in payload["shipping_lines"]:
                if sl.get("id") and sl.get("method_id") is None:
                    order["shipping_lines"] = [x for x in order["shipping_lines"] if x["id"] != sl["id"]]
                elif sl.get("id"):
                    target = next(x for x in order["shipping_lines"] if x["id"] == sl["id"])
                    target.update(sl)
                else:
                    order["shipping_lines"].append(self._new_line(sl))
        if "coupon_lines" in payload:
            order["coupon_lines"] = [
                {"id": next(self._line_ids), "code": c["code"], "discount": "1.00", "discount_tax": "0.00"}
                for c in payload["coupon_lines"]
            ]
        self._totals(order)
        return OrderData.model_validate(order)

    async def get_order(self, server_id):
        self.calls.append(("get", server_id))
        self._check()
        order = self.orders.get(server_id)
        return OrderData.model_validate(order) if order else None

    async def list_orders(self, **params):
        self.calls.append(("list", params))
        self._check()
        return [OrderData.model_validate(o) for o in self.orders.values()]

    async def aclose(self):
        self.closed = True

    def calls_of(self, kind):
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn():
    c = open_database(":memory:")
    yield c
    c.close()


@pytest.fixture
def store(conn, clock):
    return LocalOrderStore(conn, clock=clock)


@pytest.fixture
def queue(conn, clock):
    return RetryQueue(conn, clock=clock)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def reconciler(store, queue, remote):
    return SyncReconciler(store, queue, remote, locks=KeyedLock())


@pytest.fixture
def agent_services(remote):
    return Services(open_database(":memory:"), remote, is_online=lambda: False)
