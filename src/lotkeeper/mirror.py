"""Persistent mirror of product and history snapshots, one namespace per mode."""

import logging
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session, sessionmaker

from .database import SessionLocal, delete_namespace, init_db, read_payload, write_payload
from .errors import StorageCorruption
from .models import (
    PRODUCT_LIST,
    RECORD_LIST,
    InventoryState,
    OperatingMode,
    Product,
    Unit,
)

logger = logging.getLogger(__name__)

NAMESPACES = {
    OperatingMode.CONNECTED: "lotkeeper:connected-cache",
    OperatingMode.LOCAL: "lotkeeper:local-demo",
}
PRODUCTS_KEY = "products"
HISTORY_KEY = "history"

DEMO_PRODUCTS: list[tuple[str, Unit, float]] = [
    ("Alade", Unit.VOLUME, 210),
    ("Curbix", Unit.VOLUME, 71),
    ("Magnum", Unit.MASS, 110),
    ("Instivo", Unit.VOLUME, 3),
    ("Kasumin", Unit.VOLUME, 50),
    ("Priori", Unit.VOLUME, 33),
]


def demo_state() -> InventoryState:
    """Build the fixed demo data set used the first time local mode is entered."""
    products = [Product(name=name, unit=unit, quantity=quantity) for name, unit, quantity in DEMO_PRODUCTS]
    return InventoryState(products=products, history_records=[])


def namespace_for(mode: OperatingMode) -> str:
    return NAMESPACES[OperatingMode(mode)]


class PersistentMirror:
    """Loads and saves InventoryState snapshots in the mirror table.

    Connected mode uses its namespace as a best-effort cache of the server's
    data; local mode uses its own namespace as the only source of truth.
    """

    def __init__(self, session_factory: sessionmaker[Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def ensure_schema(self) -> None:
        """Create the mirror table if it does not exist yet."""
        with self._session_factory() as session:
            init_db(session.get_bind())

    def load(self, mode: OperatingMode) -> InventoryState:
        """Load the snapshot for a mode, seeding demo data on first local entry."""
        namespace = namespace_for(mode)
        with self._session_factory() as session:
            raw_products = read_payload(session, namespace, PRODUCTS_KEY)
            raw_history = read_payload(session, namespace, HISTORY_KEY)

        products = self._decode(PRODUCT_LIST, raw_products, namespace, PRODUCTS_KEY)
        history = self._decode(RECORD_LIST, raw_history, namespace, HISTORY_KEY)

        if products is None and mode == OperatingMode.LOCAL:
            logger.info(f"No stored products in {namespace}, seeding demo data")
            state = demo_state()
            self.save(mode, state)
            return state

        return InventoryState(products=products or [], history_records=history or [])

    def save(self, mode: OperatingMode, state: InventoryState) -> None:
        """Persist both collections of a snapshot under the mode's namespace."""
        namespace = namespace_for(mode)
        products_json = PRODUCT_LIST.dump_json(state.products, by_alias=True).decode()
        history_json = RECORD_LIST.dump_json(state.history_records, by_alias=True).decode()
        with self._session_factory() as session:
            write_payload(session, namespace, PRODUCTS_KEY, products_json)
            write_payload(session, namespace, HISTORY_KEY, history_json)

    def reset(self, mode: OperatingMode) -> int:
        """Drop everything stored for a mode."""
        with self._session_factory() as session:
            return delete_namespace(session, namespace_for(mode))

    def _decode(self, adapter: TypeAdapter[Any], raw: Optional[str], namespace: str, key: str) -> Optional[Any]:
        if raw is None:
            return None
        try:
            return _parse_blob(adapter, raw, namespace, key)
        except StorageCorruption as e:
            logger.warning(f"{e}; treating it as absent")
            return None


def _parse_blob(adapter: TypeAdapter[Any], raw: str, namespace: str, key: str) -> Any:
    try:
        return adapter.validate_json(raw)
    except ValidationError as e:
        raise StorageCorruption(f"Unparseable {key} blob in {namespace}: {e.error_count()} errors") from e
