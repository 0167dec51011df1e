from fastapi import APIRouter, Depends
from typing import Optional

from ..deps import get_services
from ..services import Services

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("")
async def sync_all(services: Services = Depends(get_services)):
    results = await services.reconciler.sync_all_pending()
    return {
        "results": results,
        "synced": sum(1 for r in results if r.success and not r.skipped),
        "failed": sum(1 for r in results if not r.success),
    }


@router.get("/status")
async def sync_status(services: Services = Depends(get_services)):
    return {
        "counts": await services.store.counts_by_sync_status(),
        "has_pending": await services.store.has_pending_sync(),
        "queue": await services.queue.entries(),
        "loop_running": services.loop.is_running(),
    }


@router.post("/pull")
async def pull_remote(per_page: Optional[int] = 20, services: Services = Depends(get_services)):
    return await services.reconciler.pull_remote_orders(per_page=per_page)
