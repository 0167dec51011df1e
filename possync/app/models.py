from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .validation import Facet, OrderStatus, SyncStatus

FRONTEND_ID_META_KEY = "pos_frontend_id"
SERVER_ID_META_KEY = "pos_server_id"


def _blank_if_none(v):
    return "" if v is None else v


class LineItem(BaseModel):
    id: Optional[int] = None
    name: str = ""
    product_id: int
    variation_id: int = 0
    quantity: int
    price: Optional[Decimal] = None
    subtotal: Optional[str] = None
    total: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_blank(cls, v):
        return _blank_if_none(v)


class ShippingLine(BaseModel):
    id: Optional[int] = None
    # Remote deletes a shipping line when method_id is sent as null.
    method_id: Optional[str] = ""
    instance_id: str = ""
    method_title: str = ""
    total: str = "0.00"
    total_tax: str = "0.00"

    @field_validator("instance_id", "method_title", "total", "total_tax", mode="before")
    @classmethod
    def _strings(cls, v):
        return str(_blank_if_none(v))


class CouponLine(BaseModel):
    id: Optional[int] = None
    code: str
    discount: str = "0.00"
    discount_tax: str = "0.00"

    @field_validator("discount", "discount_tax", mode="before")
    @classmethod
    def _strings(cls, v):
        return str(v) if v not in (None, "") else "0.00"


class Billing(BaseModel):
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    email: str = ""
    address_1: str = ""
    address_2: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _blank(cls, v):
        return _blank_if_none(v)


class MetaEntry(BaseModel):
    id: Optional[int] = None
    key: str
    value: Any = None


class OrderData(BaseModel):
    """Order payload in the remote service's wire shape."""

    id: int = 0
    status: str = "pending"
    customer_id: int = 0
    line_items: List[LineItem] = Field(default_factory=list)
    shipping_lines: List[ShippingLine] = Field(default_factory=list)
    coupon_lines: List[CouponLine] = Field(default_factory=list)
    customer_note: str = ""
    billing: Billing = Field(default_factory=Billing)
    meta_data: List[MetaEntry] = Field(default_factory=list)
    total: str = "0.00"
    subtotal: str = "0.00"
    discount_total: str = "0.00"
    date_created: Optional[str] = None

    @field_validator("customer_note", mode="before")
    @classmethod
    def _note_blank(cls, v):
        return _blank_if_none(v)

    @field_validator("total", "subtotal", "discount_total", mode="before")
    @classmethod
    def _money_str(cls, v):
        return str(v) if v not in (None, "") else "0.00"

    @field_validator("line_items", "shipping_lines", "coupon_lines", "meta_data", mode="before")
    @classmethod
    def _list_or_empty(cls, v):
        return [] if v is None else v

    def meta_value(self, key: str):
        for m in self.meta_data:
            if m.key == key:
                return m.value
        return None


class OrderPatch(BaseModel):
    """
    Partial update accepted by the store. Only fields that were explicitly set
    are applied; facets replace wholesale, billing merges per field and
    meta_data merges per key.
    """

    status: Optional[OrderStatus] = None
    customer_id: Optional[int] = None
    line_items: Optional[List[LineItem]] = None
    shipping_lines: Optional[List[ShippingLine]] = None
    coupon_lines: Optional[List[CouponLine]] = None
    customer_note: Optional[str] = None
    billing: Optional[Billing] = None
    meta_data: Optional[List[MetaEntry]] = None
    total: Optional[str] = None
    subtotal: Optional[str] = None
    discount_total: Optional[str] = None


class LocalOrder(BaseModel):
    frontend_id: str
    server_id: Optional[int] = None
    status: OrderStatus = "draft"
    sync_status: SyncStatus = "local"
    data: OrderData
    created_at: datetime
    updated_at: datetime
    last_sync_attempt: Optional[datetime] = None
    sync_error: Optional[str] = None
    # Bumped by every data mutation; lets the reconciler detect edits made
    # while a push was in flight.
    revision: int = 0
    pending_facets: List[Facet] = Field(default_factory=list)


class RetryQueueEntry(BaseModel):
    id: int
    frontend_id: str
    created_at: datetime
    retry_count: int = 0
    next_retry_at: datetime
    last_error: Optional[str] = None


class SyncResult(BaseModel):
    success: bool
    frontend_id: str
    server_id: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False


class ProductRef(BaseModel):
    """The part of a catalog product a line item needs."""

    product_id: int
    variation_id: int = 0
    name: str = ""
    variation_name: Optional[str] = None
    price: Optional[Decimal] = None

    def line_name(self) -> str:
        return f"{self.name} - {self.variation_name}" if self.variation_name else self.name


class ServiceMethod(BaseModel):
    # "table" maps to a pickup_location line, "takeaway" to flat_rate.
    type: Literal["table", "takeaway"]
    slug: str = ""
    title: str
    fee: Decimal = Decimal("0")
