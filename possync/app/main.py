from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional
import argparse
import time
import uuid

import uvicorn

from .config import settings
from .errors import IdentifierExhausted, OrderNotFound, RemoteOrderError
from .logs import json_log
from .routers.orders import router as orders_router
from .routers.sync import router as sync_router
from .services import Services, build_services

STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _sync_listener(results):
    failed = [r.frontend_id for r in results if not r.success]
    if failed:
        json_log("warning", "sync.loop.failures", frontend_ids=failed)


def create_app(
    services_factory: Optional[Callable[[], Services]] = None,
    start_loop: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = (services_factory or build_services)()
        app.state.services = services
        if start_loop:
            services.loop.start(_sync_listener)
        json_log("info", "agent.started", db_path=settings.db_path, loop=start_loop)
        try:
            yield
        finally:
            await services.aclose()
            app.state.services = None
            json_log("info", "agent.stopped")

    app = FastAPI(title="POS Sync Agent", version=settings.api_version, lifespan=lifespan)

    @app.exception_handler(OrderNotFound)
    def _order_not_found(_req: Request, exc: OrderNotFound):
        return JSONResponse(status_code=404, content={"detail": "order not found", "frontend_id": exc.frontend_id})

    @app.exception_handler(IdentifierExhausted)
    def _identifier_exhausted(_req: Request, exc: Exception):
        content = {"detail": "could not allocate order id"}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=503, content=content)

    @app.exception_handler(RemoteOrderError)
    def _remote_order_error(req: Request, exc: RemoteOrderError):
        json_log("warning", "remote.error", request_id=_current_request_id(req), path=req.url.path, error=str(exc))
        return JSONResponse(status_code=502, content={"detail": "remote order service failed", "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors()
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        content = {"detail": "internal error", "request_id": rid}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method

        try:
            response = await call_next(request)
        except Exception as exc:
            dur_ms = int((time.time() - started) * 1000)
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                duration_ms=dur_ms,
                error=str(exc),
            )
            raise

        response.headers["X-Request-Id"] = rid
        if path != "/health":
            dur_ms = int((time.time() - started) * 1000)
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=dur_ms,
            )
        return response

    # The UI is served from a different origin during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders_router)
    app.include_router(sync_router)

    @app.get("/health")
    def health(req: Request):
        services = getattr(req.app.state, "services", None)
        return {
            "ok": services is not None,
            "sync_loop_running": bool(services and services.loop.is_running()),
            "version": settings.api_version,
            "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
            "request_id": _current_request_id(req),
        }

    return app


app = create_app()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=7070)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
