"""Per-session state shared by the executor, batcher and reader."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import RemoteFailure
from .mirror import PersistentMirror
from .models import InventoryState, Lot, OperatingMode, Product
from .notices import NoticeBoard
from .remote import RemoteInventoryClient

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """The mode, in-memory state and collaborators of one session."""

    mode: OperatingMode
    mirror: PersistentMirror
    notices: NoticeBoard
    remote: Optional[RemoteInventoryClient] = None
    state: InventoryState = field(default_factory=InventoryState)

    @property
    def connected(self) -> bool:
        return self.mode == OperatingMode.CONNECTED

    def require_remote(self) -> RemoteInventoryClient:
        if self.remote is None:
            raise RemoteFailure("No server configured for connected mode")
        return self.remote

    def persist(self) -> None:
        """Write the in-memory state to the mirror namespace of the current mode.

        In connected mode the mirror is only a cache of the server, so a
        storage error is logged and the in-memory state stays authoritative.
        """
        try:
            self.mirror.save(self.mode, self.state)
        except SQLAlchemyError:
            if not self.connected:
                raise
            logger.exception("Could not update the connected cache")

    def find_product(self, product_id: str) -> Optional[Product]:
        return self.state.find_product(product_id)

    def find_lot(self, lot_id: str) -> tuple[Optional[Product], Optional[Lot]]:
        for product in self.state.products:
            lot = product.find_lot(lot_id)
            if lot is not None:
                return product, lot
        return None, None
