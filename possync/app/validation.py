from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


ORDER_STATUSES = ("draft", "pending", "processing", "completed", "cancelled", "refunded", "failed", "on-hold")
SYNC_STATUSES = ("local", "syncing", "synced", "error")
FACETS = ("line_items", "shipping_lines", "coupon_lines")

OrderStatus = Annotated[
    Literal["draft", "pending", "processing", "completed", "cancelled", "refunded", "failed", "on-hold"],
    BeforeValidator(_to_lower_str),
]
SyncStatus = Annotated[Literal["local", "syncing", "synced", "error"], BeforeValidator(_to_lower_str)]
Facet = Annotated[Literal["line_items", "shipping_lines", "coupon_lines"], BeforeValidator(_to_lower_str)]

# Same alphabet the identifier generator draws from; see frontend_id.py.
FrontendId = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=6, max_length=6, pattern=r"^[A-Z0-9]{6}$"),
]

# Coupon codes are matched case-insensitively by the remote service.
CouponCode = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9_.-]*$"),
]
