"""Async REST client for the OrderStream API.

Learn: Thin wrapper over httpx.AsyncClient. Errors surface as
httpx.HTTPStatusError via raise_for_status(); callers decide what a 404
means to them.
"""

from typing import Any, Optional

import httpx

from orderstream.config import settings


def websocket_url(api_url: str, path: Optional[str] = None) -> str:
    """Map http(s)://host to ws(s)://host/ws (same origin as the API)."""
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return base + (path or settings.ws_path)


class OrderApiClient:
    """Orders, stats and auth over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._http = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "OrderApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        r = await self._http.request(method, path, headers=self._headers(), **kwargs)
        r.raise_for_status()
        return r

    # ─── Auth ──────────────────────────────────────────

    async def login(self, email: str, password: str) -> str:
        r = await self._request(
            "POST", "/api/auth/login", json={"email": email, "password": password}
        )
        self.token = r.json()["access_token"]
        return self.token

    # ─── Orders ────────────────────────────────────────

    async def list_orders(
        self,
        search: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"page": page, "limit": limit}
        if search:
            params["search"] = search
        if status and status != "all":
            params["status"] = status
        return (await self._request("GET", "/api/orders", params=params)).json()

    async def get_order(self, order_id: str) -> dict[str, Any]:
        return (await self._request("GET", f"/api/orders/{order_id}")).json()

    async def create_order(self, fields: dict[str, Any]) -> dict[str, Any]:
        return (await self._request("POST", "/api/orders", json=fields)).json()

    async def update_order(self, order_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return (await self._request("PATCH", f"/api/orders/{order_id}", json=fields)).json()

    async def delete_order(self, order_id: str) -> None:
        await self._request("DELETE", f"/api/orders/{order_id}")

    async def stats(self) -> dict[str, Any]:
        return (await self._request("GET", "/api/orders/stats")).json()

    async def clients(self) -> int:
        return (await self._request("GET", "/api/clients")).json()["count"]
