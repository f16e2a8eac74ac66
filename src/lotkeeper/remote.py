"""HTTP client for the server of record."""

import logging
from typing import Any, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from .config import settings
from .errors import RemoteFailure
from .models import PRODUCT_LIST, BatchGroupPage, Lot, Product

logger = logging.getLogger(__name__)

BATCH_HEADER = "X-Operation-Batch-ID"

_PRODUCT = TypeAdapter(Product)
_LOT = TypeAdapter(Lot)
_PAGE = TypeAdapter(BatchGroupPage)


class RemoteInventoryClient:
    """Thin async wrapper over the server's product, lot and history routes.

    Every call sends the bearer token when one is set, and the operation's
    batch id in the ``X-Operation-Batch-ID`` header when given. Transport
    errors and non-2xx responses surface as RemoteFailure.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_root,
            timeout=timeout if timeout is not None else settings.request_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, batch_id: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if batch_id:
            headers[BATCH_HEADER] = batch_id
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        batch_id: Optional[str] = None,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        timeout: Any = httpx.USE_CLIENT_DEFAULT,
    ) -> Any:
        """Send one request and return the decoded JSON body (None when empty)."""
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._headers(batch_id),
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e!r}")
            raise RemoteFailure(f"Could not reach server: {e}") from e

        if response.is_error:
            message = _error_message(response)
            logger.error(f"{method} {path} returned {response.status_code}: {message}")
            raise RemoteFailure(message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteFailure(f"Invalid JSON from {method} {path}", status_code=response.status_code) from e

    # ----- Products -----

    async def fetch_products(self) -> list[Product]:
        data = await self.request("GET", "/api/products")
        return _parse(PRODUCT_LIST, data or [], "product list")

    async def create_product(self, payload: dict[str, Any], batch_id: Optional[str] = None) -> Product:
        data = await self.request("POST", "/api/products", json=payload, batch_id=batch_id)
        return _parse(_PRODUCT, data, "product")

    async def update_product(
        self, product_id: str, payload: dict[str, Any], batch_id: Optional[str] = None
    ) -> Product:
        data = await self.request("PUT", f"/api/products/{product_id}", json=payload, batch_id=batch_id)
        return _parse(_PRODUCT, data, "product")

    async def delete_product(self, product_id: str, batch_id: Optional[str] = None) -> None:
        await self.request("DELETE", f"/api/products/{product_id}", batch_id=batch_id)

    # ----- Lots -----

    async def create_lot(self, product_id: str, payload: dict[str, Any], batch_id: Optional[str] = None) -> Lot:
        data = await self.request("POST", f"/api/products/{product_id}/lotes", json=payload, batch_id=batch_id)
        return _parse(_LOT, data, "lot")

    async def update_lot(self, lot_id: str, payload: dict[str, Any], batch_id: Optional[str] = None) -> Lot:
        data = await self.request("PUT", f"/api/lotes/{lot_id}", json=payload, batch_id=batch_id)
        return _parse(_LOT, data, "lot")

    async def delete_lot(self, lot_id: str, batch_id: Optional[str] = None) -> None:
        await self.request("DELETE", f"/api/lotes/{lot_id}", batch_id=batch_id)

    # ----- History -----

    async def fetch_batch_groups(self, page: int, page_size: int) -> BatchGroupPage:
        data = await self.request("GET", "/api/history/grouped", params={"page": page, "pageSize": page_size})
        return _parse(_PAGE, data, "history page")

    async def record_product_batch_context(self, payload: dict[str, Any], batch_id: str) -> None:
        await self.request("POST", "/api/history/product-context", json=payload, batch_id=batch_id)


def _error_message(response: httpx.Response) -> str:
    """Pull the server's ``error`` or ``message`` field, falling back to the status text."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    return f"API error: {response.status_code} {response.reason_phrase}".strip()


def _parse(adapter: TypeAdapter[Any], data: Any, what: str) -> Any:
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        raise RemoteFailure(f"Server returned an invalid {what}: {e.error_count()} errors") from e
