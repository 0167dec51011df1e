from fastapi import Depends, HTTPException, Request

from .order_ops import OrderOperations
from .order_store import LocalOrderStore
from .reconciler import SyncReconciler
from .services import Services
from . import frontend_id as ids


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="agent not ready")
    return services


def get_store(services: Services = Depends(get_services)) -> LocalOrderStore:
    return services.store


def get_ops(services: Services = Depends(get_services)) -> OrderOperations:
    return services.ops


def get_reconciler(services: Services = Depends(get_services)) -> SyncReconciler:
    return services.reconciler


def normalize_frontend_id(frontend_id: str) -> str:
    fid = (frontend_id or "").strip().upper()
    if not ids.validate_format(fid):
        raise HTTPException(status_code=400, detail="invalid frontend id")
    return fid
