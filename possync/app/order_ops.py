"""
Facet-level edits for local orders.

Every operation writes the local store first and records which facet changed;
pushing is a separate step so callers (the HTTP API, the loop) decide when the
network is touched.
"""

from decimal import Decimal
from typing import Iterable, Literal, Optional

from .models import CouponLine, LineItem, LocalOrder, MetaEntry, ProductRef, ServiceMethod, ShippingLine, SyncResult
from .order_store import LocalOrderStore
from .order_utils import CENTS
from .reconciler import SyncReconciler

QuantityMode = Literal["set", "increment"]


def _line_amount(price, quantity: int) -> str:
    return str((Decimal(str(price or 0)) * quantity).quantize(CENTS))


def apply_quantity(
    line_items: list[LineItem],
    product: ProductRef,
    quantity: int,
    mode: QuantityMode = "set",
) -> tuple[list[LineItem], int]:
    """
    Return the new line items and the product's final quantity. A final
    quantity of zero or less removes the line.
    """
    items = [li.model_copy() for li in line_items]
    idx = next(
        (
            i
            for i, li in enumerate(items)
            if li.product_id == product.product_id and li.variation_id == product.variation_id
        ),
        None,
    )
    current = items[idx].quantity if idx is not None else 0
    final = quantity if mode == "set" else current + quantity

    if idx is not None:
        if final > 0:
            li = items[idx]
            amount = _line_amount(li.price, final)
            items[idx] = li.model_copy(update={"quantity": final, "subtotal": amount, "total": amount})
        else:
            del items[idx]
    elif final > 0:
        amount = _line_amount(product.price, final)
        items.append(
            LineItem(
                name=product.line_name(),
                product_id=product.product_id,
                variation_id=product.variation_id,
                quantity=final,
                price=product.price,
                subtotal=amount,
                total=amount,
            )
        )
    return items, max(final, 0)


def service_line(service: ServiceMethod, existing_id: Optional[int] = None) -> ShippingLine:
    is_table = service.type == "table"
    return ShippingLine(
        id=existing_id,
        method_id="pickup_location" if is_table else "flat_rate",
        instance_id="0" if is_table else service.slug,
        method_title=service.title,
        total=str(Decimal(service.fee).quantize(CENTS)),
        total_tax="0.00",
    )


class OrderOperations:
    def __init__(self, store: LocalOrderStore, reconciler: SyncReconciler):
        self.store = store
        self.reconciler = reconciler

    async def set_line_item(
        self,
        frontend_id: str,
        product: ProductRef,
        quantity: int,
        mode: QuantityMode = "set",
    ) -> tuple[LocalOrder, int]:
        order = await self.store.get(frontend_id)
        items, final = apply_quantity(order.data.line_items, product, quantity, mode)
        updated = await self.store.update(frontend_id, {"line_items": items}, mark_dirty=True)
        return updated, final

    async def set_service(self, frontend_id: str, service: Optional[ServiceMethod]) -> LocalOrder:
        # None clears the service line.
        if service is None:
            return await self.store.update(frontend_id, {"shipping_lines": []}, mark_dirty=True)
        order = await self.store.get(frontend_id)
        current = next((sl for sl in order.data.shipping_lines if sl.id and sl.method_id), None)
        line = service_line(service, current.id if current else None)
        return await self.store.update(frontend_id, {"shipping_lines": [line]}, mark_dirty=True)

    async def set_coupons(self, frontend_id: str, codes: Iterable[str]) -> LocalOrder:
        order = await self.store.get(frontend_id)
        known = {cl.code.lower(): cl for cl in order.data.coupon_lines}
        lines = []
        seen = set()
        for code in codes:
            key = code.strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            lines.append(known.get(key) or CouponLine(code=key))
        return await self.store.update(frontend_id, {"coupon_lines": lines}, mark_dirty=True)

    async def set_note(self, frontend_id: str, note: str) -> LocalOrder:
        return await self.store.update(frontend_id, {"customer_note": note or ""}, mark_dirty=True)

    async def set_billing(self, frontend_id: str, billing: dict) -> LocalOrder:
        return await self.store.update(frontend_id, {"billing": billing}, mark_dirty=True)

    async def set_status(self, frontend_id: str, status: str) -> LocalOrder:
        return await self.store.update(frontend_id, {"status": status}, mark_dirty=True)

    async def set_meta(self, frontend_id: str, entries: Iterable[MetaEntry]) -> LocalOrder:
        return await self.store.update(frontend_id, {"meta_data": list(entries)}, mark_dirty=True)

    async def push(self, frontend_id: str) -> SyncResult:
        return await self.reconciler.sync_order(frontend_id)
