"""
Client for the remote order service (WooCommerce-style REST API).

Every failure, whether a non-2xx response or a transport error, surfaces as
RemoteOrderError so callers have a single thing to catch.
"""

from typing import Optional

import httpx
from pydantic import ValidationError

from .config import settings
from .errors import RemoteOrderError
from .models import OrderData

MAX_ERROR_BODY = 1000


class RemoteOrderService:
    def __init__(
        self,
        base_url: Optional[str] = None,
        consumer_key: Optional[str] = None,
        consumer_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        base = (base_url if base_url is not None else settings.api_base_url).rstrip("/")
        key = consumer_key if consumer_key is not None else settings.consumer_key
        secret = consumer_secret if consumer_secret is not None else settings.consumer_secret
        self.base_url = base
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base,
            auth=(key, secret) if key else None,
            timeout=timeout if timeout is not None else settings.http_timeout_seconds,
            headers={"Accept": "application/json"},
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as ex:
            raise RemoteOrderError(f"{method} {path} failed: {ex}") from ex
        if resp.status_code >= 400:
            msg = f"http {resp.status_code} {resp.reason_phrase}".strip()
            body = resp.text or ""
            if body:
                msg = f"{msg}: {body[:MAX_ERROR_BODY]}"
            raise RemoteOrderError(msg, status_code=resp.status_code)
        return resp

    @staticmethod
    def _json(resp: httpx.Response):
        try:
            return resp.json()
        except ValueError as ex:
            raise RemoteOrderError(f"malformed response body: {ex}", status_code=resp.status_code) from ex

    @staticmethod
    def _order(raw, resp: httpx.Response) -> OrderData:
        try:
            return OrderData.model_validate(raw)
        except ValidationError as ex:
            raise RemoteOrderError(f"unexpected order response: {ex}", status_code=resp.status_code) from ex

    async def create_order(self, payload: dict, idempotency_key: Optional[str] = None) -> OrderData:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        resp = await self._request("POST", "/orders", json=payload, headers=headers)
        return self._order(self._json(resp), resp)

    async def update_order(self, server_id: int, payload: dict) -> OrderData:
        resp = await self._request("PUT", f"/orders/{int(server_id)}", json=payload)
        return self._order(self._json(resp), resp)

    async def get_order(self, server_id: int) -> Optional[OrderData]:
        try:
            resp = await self._request("GET", f"/orders/{int(server_id)}")
        except RemoteOrderError as ex:
            if ex.status_code == 404:
                return None
            raise
        return self._order(self._json(resp), resp)

    async def list_orders(self, **params) -> list[OrderData]:
        query = {k: v for k, v in params.items() if v is not None}
        resp = await self._request("GET", "/orders", params=query)
        body = self._json(resp)
        if not isinstance(body, list):
            raise RemoteOrderError("unexpected list response", status_code=resp.status_code)
        return [self._order(o, resp) for o in body]

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
