"""Pytest configuration and shared fixtures."""

import math
import os
import uuid
from collections.abc import AsyncGenerator, Generator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Keep the module-level mirror engine off the filesystem
os.environ.setdefault("LOTKEEPER_MIRROR_DATABASE_URL", "sqlite://")

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from jose import jwt
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lotkeeper.config import Settings
from lotkeeper.database.models import Base
from lotkeeper.mirror import PersistentMirror
from lotkeeper.models import OperatingMode
from lotkeeper.notices import NoticeBoard
from lotkeeper.remote import RemoteInventoryClient
from lotkeeper.session import InventorySession

TEST_USER = "admin"
TEST_PASSWORD = "admin123"
TEST_SECRET = "test-secret"


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        api_base_url="http://testserver",
        mirror_database_url="sqlite://",
        history_page_size=5,
        debug=True,
    )


@pytest.fixture
def mirror_engine() -> Generator[Engine, None, None]:
    """Create an in-memory mirror database shared by every connection."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(mirror_engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(mirror_engine, expire_on_commit=False)


@pytest.fixture
def mirror(session_factory: sessionmaker[Session]) -> PersistentMirror:
    return PersistentMirror(session_factory)


@pytest.fixture
def notices() -> NoticeBoard:
    return NoticeBoard()


# ===== Fake server of record =====


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FakeServerState:
    """Data and failure switches behind the fake server."""

    products: dict[str, dict[str, Any]] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)
    tokens: set[str] = field(default_factory=set)
    # (method, path prefix) pairs answered with HTTP 500
    server_errors: set[tuple[str, str]] = field(default_factory=set)
    # (method, path prefix) pairs that fail at the transport level
    network_errors: set[tuple[str, str]] = field(default_factory=set)
    requests: list[tuple[str, str, Optional[str]]] = field(default_factory=list)
    # Reject API calls without a token this server issued
    require_auth: bool = False

    def add_product(self, name: str, unit: str, quantity: float = 0, lots: Optional[list[float]] = None) -> str:
        product_id = str(uuid.uuid4())
        self.products[product_id] = {"id": product_id, "name": name, "unit": unit, "quantity": quantity, "lotes": []}
        for lot_quantity in lots or []:
            self.products[product_id]["lotes"].append(self._lot(product_id, lot_quantity, "2026-12-31"))
        self._recompute(product_id)
        return product_id

    def _lot(self, product_id: str, quantity: float, expiry: str) -> dict[str, Any]:
        now = _now()
        return {
            "id": str(uuid.uuid4()),
            "product_id": product_id,
            "quantity": quantity,
            "data_validade": expiry,
            "created_at": now,
            "updated_at": now,
        }

    def _recompute(self, product_id: str) -> None:
        product = self.products[product_id]
        if product["lotes"]:
            product["quantity"] = sum(lot["quantity"] for lot in product["lotes"])

    def find_lot(self, lot_id: str) -> tuple[Optional[dict[str, Any]], Optional[dict[str, Any]]]:
        for product in self.products.values():
            for lot in product["lotes"]:
                if lot["id"] == lot_id:
                    return product, lot
        return None, None

    def record(self, entity_type: str, entity_id: str, changes: dict[str, Any], batch_id: Optional[str]) -> None:
        self.history.append(
            {
                "id": str(uuid.uuid4()),
                "date": _now(),
                "entityType": entity_type,
                "entityId": entity_id,
                "changes": changes,
                "batchId": batch_id or str(uuid.uuid4()),
            }
        )

    def grouped(self, page: int, page_size: int) -> dict[str, Any]:
        """Group history the way the production server does, including its zero page count."""
        batches: dict[str, list[dict[str, Any]]] = {}
        for entry in self.history:
            batches.setdefault(entry["batchId"], []).append(entry)
        ordered = sorted(
            batches.items(),
            key=lambda item: (min(e["date"] for e in item[1]), item[0]),
            reverse=True,
        )
        total = len(ordered)
        groups = []
        for batch_id, entries in ordered[(page - 1) * page_size : page * page_size]:
            entries = sorted(entries, key=lambda e: e["date"])
            contexts = {
                e["entityId"]: e["changes"] for e in entries if e["entityType"] == "product_batch_context"
            }
            records = []
            for e in entries:
                record = dict(e)
                if e["entityType"] != "product_batch_context":
                    context = contexts.get(e["changes"].get("productId"))
                    if context is None:
                        record["productNameContext"] = "Context Unavailable"
                    else:
                        record["productNameContext"] = context["productNameSnapshot"]
                        record["productCurrentTotalQuantity"] = context["quantityAfterBatch"]
                records.append(record)
            group: dict[str, Any] = {
                "batchId": batch_id,
                "createdAt": entries[0]["date"],
                "records": records,
                "recordCount": len(records),
            }
            if contexts:
                group["productSummaries"] = {
                    pid: {
                        "productId": pid,
                        "productName": c["productNameSnapshot"],
                        "totalQuantityBeforeBatch": c["quantityBeforeBatch"],
                        "totalQuantityAfterBatch": c["quantityAfterBatch"],
                        "netQuantityChangeInBatch": c["quantityAfterBatch"] - c["quantityBeforeBatch"],
                    }
                    for pid, c in contexts.items()
                }
            groups.append(group)
        return {
            "groups": groups,
            "totalBatches": total,
            "page": page,
            "pageSize": page_size,
            "totalPages": math.ceil(total / page_size),
        }


def build_fake_server(state: FakeServerState) -> FastAPI:
    """Build a FastAPI stand-in for the server of record."""
    app = FastAPI()

    @app.middleware("http")
    async def inject_failures(request: Request, call_next: Any) -> Any:
        state.requests.append(
            (request.method, request.url.path, request.headers.get("X-Operation-Batch-ID"))
        )
        if state.require_auth and not request.url.path.startswith("/api/auth/"):
            authorization = request.headers.get("Authorization")
            if not authorization:
                return JSONResponse({"error": "Authorization header required"}, status_code=401)
            if authorization.removeprefix("Bearer ") not in state.tokens:
                return JSONResponse({"error": "Invalid token"}, status_code=401)
        for method, prefix in state.server_errors:
            if request.method == method and request.url.path.startswith(prefix):
                return JSONResponse({"error": "Simulated server failure"}, status_code=500)
        return await call_next(request)

    @app.get("/api/products")
    async def list_products() -> Any:
        return list(state.products.values())

    @app.post("/api/products", status_code=201)
    async def create_product(body: dict[str, Any], x_operation_batch_id: Optional[str] = Header(None)) -> Any:
        product_id = state.add_product(body["name"], body["unit"], body.get("quantity", 0))
        product = state.products[product_id]
        state.record(
            "product",
            product_id,
            {
                "action": "created",
                "productId": product_id,
                "productName": product["name"],
                "quantityAfter": product["quantity"],
                "isNewProduct": True,
            },
            x_operation_batch_id,
        )
        return product

    @app.put("/api/products/{product_id}")
    async def update_product(
        product_id: str, body: dict[str, Any], x_operation_batch_id: Optional[str] = Header(None)
    ) -> Any:
        product = state.products.get(product_id)
        if product is None:
            return JSONResponse({"error": "Product not found"}, status_code=404)
        changed = []
        for key in ("name", "unit"):
            if key in body and body[key] != product[key]:
                changed.append({"field": key, "oldValue": product[key], "newValue": body[key]})
                product[key] = body[key]
        if changed:
            state.record(
                "product",
                product_id,
                {
                    "action": "product_details_updated",
                    "productId": product_id,
                    "productName": product["name"],
                    "changedFields": changed,
                },
                x_operation_batch_id,
            )
        if "quantity" in body and not product["lotes"]:
            before = product["quantity"]
            product["quantity"] = body["quantity"]
            state.record(
                "product",
                product_id,
                {
                    "action": "add" if body["quantity"] > before else "remove",
                    "productId": product_id,
                    "productName": product["name"],
                    "quantityChanged": abs(body["quantity"] - before),
                    "quantityBefore": before,
                    "quantityAfter": body["quantity"],
                },
                x_operation_batch_id,
            )
        return product

    @app.delete("/api/products/{product_id}")
    async def delete_product(product_id: str, x_operation_batch_id: Optional[str] = Header(None)) -> Any:
        product = state.products.pop(product_id, None)
        if product is None:
            return JSONResponse({"error": "Product not found"}, status_code=404)
        state.record(
            "product",
            product_id,
            {
                "action": "deleted",
                "productId": product_id,
                "productName": product["name"],
                "quantityBefore": product["quantity"],
                "isProductRemoval": True,
            },
            x_operation_batch_id,
        )
        return {"message": "Product deleted successfully"}

    @app.post("/api/products/{product_id}/lotes", status_code=201)
    async def create_lot(
        product_id: str, body: dict[str, Any], x_operation_batch_id: Optional[str] = Header(None)
    ) -> Any:
        product = state.products.get(product_id)
        if product is None:
            return JSONResponse({"error": "Product not found"}, status_code=404)
        lot = state._lot(product_id, body["quantity"], body["data_validade"])
        product["lotes"].append(lot)
        state._recompute(product_id)
        state.record(
            "lote",
            lot["id"],
            {
                "action": "created",
                "loteId": lot["id"],
                "productId": product_id,
                "quantityAfter": lot["quantity"],
                "dataValidade": lot["data_validade"],
            },
            x_operation_batch_id,
        )
        return lot

    @app.put("/api/lotes/{lot_id}")
    async def update_lot(lot_id: str, body: dict[str, Any], x_operation_batch_id: Optional[str] = Header(None)) -> Any:
        product, lot = state.find_lot(lot_id)
        if product is None or lot is None:
            return JSONResponse({"error": "Lote not found"}, status_code=404)
        before, old_expiry = lot["quantity"], lot["data_validade"]
        lot["quantity"] = body["quantity"]
        lot["data_validade"] = body["data_validade"]
        lot["updated_at"] = _now()
        state._recompute(product["id"])
        state.record(
            "lote",
            lot_id,
            {
                "action": "updated",
                "loteId": lot_id,
                "productId": product["id"],
                "quantityBefore": before,
                "quantityAfter": lot["quantity"],
                "quantityChanged": lot["quantity"] - before,
                "dataValidadeOld": old_expiry,
                "dataValidadeNew": lot["data_validade"],
            },
            x_operation_batch_id,
        )
        return lot

    @app.delete("/api/lotes/{lot_id}")
    async def delete_lot(lot_id: str, x_operation_batch_id: Optional[str] = Header(None)) -> Any:
        product, lot = state.find_lot(lot_id)
        if product is None or lot is None:
            return JSONResponse({"error": "Lote not found"}, status_code=404)
        product["lotes"].remove(lot)
        product["quantity"] = sum(item["quantity"] for item in product["lotes"])
        state.record(
            "lote",
            lot_id,
            {
                "action": "deleted",
                "loteId": lot_id,
                "productId": product["id"],
                "quantityBefore": lot["quantity"],
                "dataValidade": lot["data_validade"],
            },
            x_operation_batch_id,
        )
        return {"message": "Lote deleted successfully"}

    @app.get("/api/history/grouped")
    async def grouped_history(page: int = 1, pageSize: int = 10) -> Any:
        return state.grouped(max(page, 1), max(pageSize, 1))

    @app.post("/api/history/product-context", status_code=201)
    async def product_context(body: dict[str, Any], x_operation_batch_id: Optional[str] = Header(None)) -> Any:
        if not x_operation_batch_id:
            return JSONResponse({"error": "X-Operation-Batch-ID header is required"}, status_code=400)
        state.record("product_batch_context", body["productId"], body, x_operation_batch_id)
        return {"message": "Product batch context recorded successfully"}

    @app.post("/api/auth/login")
    async def login(body: dict[str, Any]) -> Any:
        if body.get("username") != TEST_USER or body.get("password") != TEST_PASSWORD:
            return JSONResponse({"error": "Senha incorreta"}, status_code=401)
        token = jwt.encode({"username": TEST_USER, "exp": 4102444800}, TEST_SECRET, algorithm="HS256")
        state.tokens.add(token)
        return {"token": token, "user": {"username": TEST_USER}}

    @app.get("/api/auth/verify")
    async def verify(authorization: Optional[str] = Header(None)) -> Any:
        token = (authorization or "").removeprefix("Bearer ")
        return {"valid": token in state.tokens}

    return app


class FlakyTransport(httpx.AsyncBaseTransport):
    """ASGI transport that drops selected requests with a connection error."""

    def __init__(self, app: FastAPI, state: FakeServerState) -> None:
        self._inner = httpx.ASGITransport(app=app)
        self._state = state

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        for method, prefix in self._state.network_errors:
            if request.method == method and request.url.path.startswith(prefix):
                raise httpx.ConnectError("Simulated network error", request=request)
        return await self._inner.handle_async_request(request)


@pytest.fixture
def server_state() -> FakeServerState:
    return FakeServerState()


@pytest_asyncio.fixture
async def remote(server_state: FakeServerState) -> AsyncGenerator[RemoteInventoryClient, None]:
    """Remote client wired to the fake server."""
    client = RemoteInventoryClient(
        base_url="http://testserver",
        transport=FlakyTransport(build_fake_server(server_state), server_state),
    )
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def local_session(
    test_settings: Settings, mirror: PersistentMirror, notices: NoticeBoard
) -> AsyncGenerator[InventorySession, None]:
    """Started session in local mode, seeded with the demo data."""
    session = InventorySession(OperatingMode.LOCAL, config=test_settings, mirror=mirror, notices=notices)
    await session.start()
    yield session
    await session.close()


@pytest_asyncio.fixture
async def connected_session(
    test_settings: Settings,
    mirror: PersistentMirror,
    notices: NoticeBoard,
    remote: RemoteInventoryClient,
) -> AsyncGenerator[InventorySession, None]:
    """Session in connected mode against the fake server (not started)."""
    session = InventorySession(
        OperatingMode.CONNECTED, config=test_settings, mirror=mirror, remote=remote, notices=notices
    )
    yield session
