"""
Client-side order totals.

The remote service computes authoritative totals; local orders need them
immediately so the UI can show a running total while offline.
"""

from decimal import Decimal, InvalidOperation

from .models import CouponLine, LineItem, OrderData, ShippingLine

CENTS = Decimal("0.01")


def _dec(raw) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _fmt(value: Decimal) -> str:
    return str(value.quantize(CENTS))


def calculate_subtotal(line_items: list[LineItem]) -> str:
    return _fmt(sum((_dec(li.price) * li.quantity for li in line_items), Decimal("0")))


def calculate_shipping_total(shipping_lines: list[ShippingLine]) -> str:
    return _fmt(sum((_dec(sl.total) for sl in shipping_lines), Decimal("0")))


def calculate_discount_total(coupon_lines: list[CouponLine]) -> str:
    return _fmt(sum((_dec(c.discount) for c in coupon_lines), Decimal("0")))


def calculate_order_total(data: OrderData) -> str:
    # subtotal - discount + shipping
    subtotal = _dec(calculate_subtotal(data.line_items))
    discount = _dec(data.discount_total)
    shipping = _dec(calculate_shipping_total(data.shipping_lines))
    return _fmt(subtotal - discount + shipping)
