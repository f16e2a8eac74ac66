"""Inventory session: the service graph for one user session."""

import logging
from typing import Optional

from .auth import AuthClient
from .config import Settings, settings
from .context import EngineContext
from .errors import RemoteFailure
from .executor import MutationExecutor
from .history import HistoryBatcher
from .mirror import PersistentMirror
from .models import BatchGroupPage, InventoryState, OperatingMode, Product
from .notices import NoticeBoard
from .operations import InventoryOperations
from .quantity import sync_quantity
from .reader import BatchReconciliationReader
from .remote import RemoteInventoryClient

logger = logging.getLogger(__name__)


class InventorySession:
    """Builds the executor, batcher, reader and operations around one context.

    The operating mode is passed in rather than read from global state, and
    only changes through ``switch_mode``.

    Example:
        session = InventorySession(OperatingMode.LOCAL)
        await session.start()
        result = await session.operations.adjust_quantity(product_id, -20)
    """

    def __init__(
        self,
        mode: Optional[OperatingMode] = None,
        *,
        config: Optional[Settings] = None,
        mirror: Optional[PersistentMirror] = None,
        remote: Optional[RemoteInventoryClient] = None,
        notices: Optional[NoticeBoard] = None,
    ) -> None:
        self.config = config or settings
        self.context = EngineContext(
            mode=OperatingMode(mode or self.config.operating_mode),
            mirror=mirror or PersistentMirror(),
            notices=notices or NoticeBoard(),
            remote=remote,
        )
        self.batcher = HistoryBatcher(self.context)
        self.executor = MutationExecutor(self.context, self.batcher)
        self.reader = BatchReconciliationReader(self.context, page_size=self.config.history_page_size)
        self.operations = InventoryOperations(self.context, self.executor, self.batcher)
        self._auth: Optional[AuthClient] = None

    @property
    def mode(self) -> OperatingMode:
        return self.context.mode

    @property
    def state(self) -> InventoryState:
        return self.context.state

    @property
    def products(self) -> list[Product]:
        return self.context.state.products

    @property
    def notices(self) -> NoticeBoard:
        return self.context.notices

    def _remote(self) -> RemoteInventoryClient:
        if self.context.remote is None:
            self.context.remote = RemoteInventoryClient(
                base_url=self.config.api_root,
                token=self.config.api_token,
                timeout=self.config.request_timeout,
            )
        return self.context.remote

    @property
    def auth(self) -> AuthClient:
        if self._auth is None:
            self._auth = AuthClient(
                self._remote(),
                login_timeout=self.config.login_timeout,
                verify_timeout=self.config.verify_timeout,
            )
        return self._auth

    async def login(self, username: str, password: str) -> bool:
        """Log in to the server of record; in connected mode reload its data."""
        if not await self.auth.login(username, password):
            self.notices.error(f"Login failed: {self.auth.last_error}")
            return False
        self.notices.success(f"Logged in as {self.auth.username}")
        if self.context.connected:
            await self._load()
        return True

    async def _sign_in(self) -> None:
        """Log in with configured credentials when no token is set yet."""
        if self._remote().token or not (self.config.api_username and self.config.api_password):
            return
        if not await self.auth.login(self.config.api_username, self.config.api_password):
            self.notices.warning(f"Could not log in as {self.config.api_username}: {self.auth.last_error}")

    async def start(self) -> InventoryState:
        """Prepare storage and perform the initial load for the current mode."""
        self.context.mirror.ensure_schema()
        if self.context.connected:
            await self._sign_in()
        await self._load()
        return self.context.state

    async def _load(self) -> None:
        mode = self.context.mode
        if mode == OperatingMode.LOCAL:
            self.context.state = self.context.mirror.load(mode)
            logger.info(f"Loaded {len(self.products)} products in local mode")
            return

        cached = self.context.mirror.load(mode)
        try:
            products = await self._remote().fetch_products()
        except RemoteFailure as e:
            self.context.state = cached
            self.notices.warning(f"Server unavailable, showing cached data: {e}")
            return

        for product in products:
            sync_quantity(product)
        self.context.state = InventoryState(products=products, history_records=cached.history_records)
        self.context.persist()
        logger.info(f"Loaded {len(products)} products from the server")

    async def switch_mode(self, mode: OperatingMode) -> InventoryState:
        """Switch operating mode and reload state from the new mode's source."""
        mode = OperatingMode(mode)
        if mode == self.context.mode:
            return self.context.state
        logger.info(f"Switching from {self.context.mode.value} to {mode.value} mode")
        self.context.mode = mode
        if self.context.connected:
            await self._sign_in()
        await self._load()
        self.notices.info(f"Now working in {mode.value} mode")
        return self.context.state

    async def history_page(self, page: int = 1, page_size: Optional[int] = None) -> BatchGroupPage:
        return await self.reader.get_batch_groups(page, page_size)

    async def close(self) -> None:
        if self.context.remote is not None:
            await self.context.remote.aclose()
