from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from typing import List, Literal, Optional

from ..deps import get_ops, get_reconciler, get_store, normalize_frontend_id
from ..models import Billing, CouponLine, LineItem, MetaEntry, ProductRef, ServiceMethod, ShippingLine
from ..order_ops import OrderOperations
from ..order_store import LocalOrderStore
from ..reconciler import SyncReconciler
from ..validation import CouponCode, OrderStatus, SyncStatus

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderCreateIn(BaseModel):
    customer_id: int = 0
    customer_note: str = ""
    billing: Optional[Billing] = None
    line_items: List[LineItem] = Field(default_factory=list)
    shipping_lines: List[ShippingLine] = Field(default_factory=list)
    coupon_lines: List[CouponLine] = Field(default_factory=list)
    meta_data: List[MetaEntry] = Field(default_factory=list)
    sync: bool = False


class OrderUpdateIn(BaseModel):
    status: Optional[OrderStatus] = None
    customer_note: Optional[str] = None
    billing: Optional[Billing] = None
    meta_data: Optional[List[MetaEntry]] = None


class LineItemIn(BaseModel):
    product: ProductRef
    quantity: int
    mode: Literal["set", "increment"] = "set"


class ServiceIn(BaseModel):
    # null clears the service line
    service: Optional[ServiceMethod] = None


class CouponsIn(BaseModel):
    codes: List[CouponCode] = Field(default_factory=list)


@router.get("")
async def list_orders(
    status: Optional[List[OrderStatus]] = Query(None),
    sync_status: Optional[List[SyncStatus]] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    store: LocalOrderStore = Depends(get_store),
):
    orders = await store.list(status=status, sync_status=sync_status, limit=limit)
    return {"orders": orders}


@router.post("", status_code=201)
async def create_order(
    data: OrderCreateIn,
    background_tasks: BackgroundTasks,
    store: LocalOrderStore = Depends(get_store),
    reconciler: SyncReconciler = Depends(get_reconciler),
):
    initial = {k: v for k, v in data.model_dump(exclude_unset=True, exclude={"sync"}).items() if v is not None}
    order = await store.create(initial)
    if data.sync:
        background_tasks.add_task(reconciler.sync_order, order.frontend_id)
    return order


@router.get("/by-server-id/{server_id}")
async def get_order_by_server_id(server_id: int, store: LocalOrderStore = Depends(get_store)):
    order = await store.get_by_server_id(server_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return order


@router.get("/{frontend_id}")
async def get_order(frontend_id: str, store: LocalOrderStore = Depends(get_store)):
    return await store.get(normalize_frontend_id(frontend_id))


@router.patch("/{frontend_id}")
async def update_order(
    frontend_id: str,
    data: OrderUpdateIn,
    background_tasks: BackgroundTasks,
    store: LocalOrderStore = Depends(get_store),
    reconciler: SyncReconciler = Depends(get_reconciler),
):
    fid = normalize_frontend_id(frontend_id)
    order = await store.update(fid, data.model_dump(exclude_unset=True), mark_dirty=True)
    background_tasks.add_task(reconciler.sync_order, fid)
    return order


@router.put("/{frontend_id}/line-items")
async def set_line_item(
    frontend_id: str,
    data: LineItemIn,
    background_tasks: BackgroundTasks,
    ops: OrderOperations = Depends(get_ops),
):
    fid = normalize_frontend_id(frontend_id)
    order, final_quantity = await ops.set_line_item(fid, data.product, data.quantity, data.mode)
    background_tasks.add_task(ops.push, fid)
    return {"order": order, "final_quantity": final_quantity}


@router.put("/{frontend_id}/service")
async def set_service(
    frontend_id: str,
    data: ServiceIn,
    background_tasks: BackgroundTasks,
    ops: OrderOperations = Depends(get_ops),
):
    fid = normalize_frontend_id(frontend_id)
    order = await ops.set_service(fid, data.service)
    background_tasks.add_task(ops.push, fid)
    return order


@router.put("/{frontend_id}/coupons")
async def set_coupons(
    frontend_id: str,
    data: CouponsIn,
    background_tasks: BackgroundTasks,
    ops: OrderOperations = Depends(get_ops),
):
    fid = normalize_frontend_id(frontend_id)
    order = await ops.set_coupons(fid, data.codes)
    background_tasks.add_task(ops.push, fid)
    return order


@router.post("/{frontend_id}/sync")
async def sync_order(
    frontend_id: str,
    force: bool = False,
    reconciler: SyncReconciler = Depends(get_reconciler),
):
    return await reconciler.sync_order(normalize_frontend_id(frontend_id), force=force)
