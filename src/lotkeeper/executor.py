"""Optimistic mutation executor.

Every mutation runs through the same states::

    Idle -> Applying -> Confirming -> Committed | RolledBack

Applying changes the in-memory entity right away and keeps the prior value.
Confirming (connected mode only) awaits the server; mutations on the same
entity wait on a per-entity lock so they never interleave. A committed
mutation merges the server's snapshot, re-derives the product quantity and
is handed to the history batcher. A rolled-back mutation restores the prior
value, posts an error notice and leaves no change record.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Optional, TypeVar, Union

from .context import EngineContext
from .errors import RemoteFailure, ValidationFailure
from .history import HistoryBatcher
from .models import (
    ChangeDetails,
    ChangedField,
    ChangeRecord,
    EntityType,
    Lot,
    LotCreated,
    LotDeleted,
    LotUpdated,
    Product,
    ProductCreated,
    ProductDeleted,
    ProductDetailsUpdated,
    ProductQuantityChanged,
    Unit,
    new_id,
)
from .quantity import derive_quantity, lot_total, sync_quantity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationKind(str, Enum):
    ADD_PRODUCT = "add_product"
    UPDATE_PRODUCT_DETAILS = "update_product_details"
    SET_PRODUCT_QUANTITY = "set_product_quantity"
    REMOVE_PRODUCT = "remove_product"
    CREATE_LOT = "create_lot"
    UPDATE_LOT = "update_lot"
    DELETE_LOT = "delete_lot"


class MutationStatus(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationOutcome:
    """Final state of one mutation."""

    kind: MutationKind
    entity_id: str
    status: MutationStatus
    product_id: Optional[str] = None
    record: Optional[ChangeRecord] = None
    error: Optional[Exception] = None

    @property
    def committed(self) -> bool:
        return self.status == MutationStatus.COMMITTED


def _require_name(name: Optional[str]) -> str:
    if name is None or not name.strip():
        raise ValidationFailure("Product name cannot be empty")
    return name.strip()


def _require_unit(unit: Union[Unit, str]) -> Unit:
    try:
        return Unit(unit)
    except ValueError as e:
        raise ValidationFailure(f"Invalid unit {unit!r}. Must be 'L' or 'kg'.") from e


def _require_lot_quantity(quantity: float) -> float:
    if quantity is None or quantity <= 0:
        raise ValidationFailure("Lot quantity must be greater than zero")
    return float(quantity)


def _index_of(items: list[Any], entity_id: str) -> Optional[int]:
    return next((i for i, item in enumerate(items) if item.id == entity_id), None)


def _remove_by_id(items: list[Any], entity_id: str) -> None:
    index = _index_of(items, entity_id)
    if index is not None:
        items.pop(index)


def _reinsert(items: list[Any], index: int, item: Any) -> None:
    """Put an item back at its original position, if it is not already there."""
    if _index_of(items, item.id) is None:
        items.insert(min(index, len(items)), item)


def _merge_product(local: Product, snapshot: Product) -> None:
    """Overwrite a product with the server's copy; the server wins."""
    local.id = snapshot.id
    local.name = snapshot.name
    local.unit = snapshot.unit
    if snapshot.lots:
        local.lots = snapshot.lots
    local.quantity = snapshot.quantity
    sync_quantity(local)


def _merge_lot(local: Lot, snapshot: Lot) -> None:
    local.id = snapshot.id
    local.quantity = snapshot.quantity
    local.expiry_date = snapshot.expiry_date
    local.created_at = snapshot.created_at or local.created_at
    local.updated_at = snapshot.updated_at or local.updated_at


def _lot_payload(quantity: float, expiry_date: date) -> dict[str, Any]:
    return {"quantity": quantity, "data_validade": expiry_date.isoformat()}


class MutationExecutor:
    """Runs product and lot mutations against the session state."""

    def __init__(self, context: EngineContext, batcher: HistoryBatcher) -> None:
        self._context = context
        self._batcher = batcher
        self._locks: defaultdict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, entity_type: EntityType, entity_id: str) -> asyncio.Lock:
        return self._locks[(entity_type.value, entity_id)]

    @property
    def _products(self) -> list[Product]:
        return self._context.state.products

    def _require_product(self, product_id: str) -> Product:
        product = self._context.find_product(product_id)
        if product is None:
            raise ValidationFailure(f"Product {product_id} not found")
        return product

    def _require_lot(self, lot_id: str) -> tuple[Product, Lot]:
        product, lot = self._context.find_lot(lot_id)
        if product is None or lot is None:
            raise ValidationFailure(f"Lot {lot_id} not found")
        return product, lot

    def _applied(self) -> None:
        # Local mode has nothing to confirm; the save here is the durable write
        if not self._context.connected:
            self._context.persist()

    async def _confirm(self, call: Callable[[], Awaitable[T]]) -> Optional[T]:
        if not self._context.connected:
            return None
        return await call()

    def _commit(
        self,
        kind: MutationKind,
        entity_type: EntityType,
        entity_id: str,
        product_id: str,
        details: ChangeDetails,
        batch_id: str,
    ) -> MutationOutcome:
        record = self._batcher.record_change(entity_type, entity_id, details, batch_id)
        logger.info(f"Committed {kind.value} on {entity_type.value} {entity_id}")
        return MutationOutcome(
            kind=kind,
            entity_id=entity_id,
            status=MutationStatus.COMMITTED,
            product_id=product_id,
            record=record,
        )

    def _roll_back(
        self,
        kind: MutationKind,
        entity_id: str,
        product_id: Optional[str],
        error: RemoteFailure,
        message: str,
    ) -> MutationOutcome:
        self._context.persist()
        self._context.notices.error(f"{message}: {error}")
        logger.warning(f"Rolled back {kind.value} on {entity_id}: {error}")
        return MutationOutcome(
            kind=kind,
            entity_id=entity_id,
            status=MutationStatus.ROLLED_BACK,
            product_id=product_id,
            error=error,
        )

    # ===== Products =====

    async def add_product(
        self,
        name: str,
        unit: Union[Unit, str],
        quantity: float = 0,
        batch_id: Optional[str] = None,
    ) -> MutationOutcome:
        """Create a product without lots."""
        name = _require_name(name)
        unit = _require_unit(unit)
        if quantity is None or quantity < 0:
            raise ValidationFailure("Quantity cannot be negative")
        batch_id = batch_id or new_id()

        product = Product(name=name, unit=unit, quantity=quantity)
        async with self.lock_for(EntityType.PRODUCT, product.id):
            temp_id = product.id
            self._products.append(product)
            self._applied()
            try:
                snapshot = await self._confirm(
                    lambda: self._context.require_remote().create_product(
                        {"name": name, "unit": unit.value, "quantity": quantity}, batch_id
                    )
                )
            except RemoteFailure as e:
                _remove_by_id(self._products, temp_id)
                return self._roll_back(MutationKind.ADD_PRODUCT, temp_id, temp_id, e, f"Could not add {name}")

            if snapshot is not None:
                _merge_product(product, snapshot)
            sync_quantity(product)
            details = ProductCreated(
                product_id=product.id,
                product_name=product.name,
                quantity_after=product.quantity,
            )
            return self._commit(
                MutationKind.ADD_PRODUCT, EntityType.PRODUCT, product.id, product.id, details, batch_id
            )

    async def update_product_details(
        self,
        product_id: str,
        name: Optional[str] = None,
        unit: Optional[Union[Unit, str]] = None,
        batch_id: Optional[str] = None,
    ) -> MutationOutcome:
        """Change the name and/or unit of a product."""
        new_name = _require_name(name) if name is not None else None
        new_unit = _require_unit(unit) if unit is not None else None
        batch_id = batch_id or new_id()

        async with self.lock_for(EntityType.PRODUCT, product_id):
            product = self._require_product(product_id)
            changed: list[ChangedField] = []
            if new_name is not None and new_name != product.name:
                changed.append(ChangedField(field="name", old_value=product.name, new_value=new_name))
            if new_unit is not None and new_unit != product.unit:
                changed.append(ChangedField(field="unit", old_value=product.unit.value, new_value=new_unit.value))
            if not changed:
                raise ValidationFailure(f"No changes to save for {product.name}")

            prior_name, prior_unit = product.name, product.unit
            product.name = new_name or product.name
            product.unit = new_unit or product.unit
            self._applied()
            payload = {c.field: c.new_value for c in changed}
            try:
                snapshot = await self._confirm(
                    lambda: self._context.require_remote().update_product(product_id, payload, batch_id)
                )
            except RemoteFailure as e:
                product.name, product.unit = prior_name, prior_unit
                return self._roll_back(
                    MutationKind.UPDATE_PRODUCT_DETAILS, product_id, product_id, e, f"Could not update {prior_name}"
                )

            if snapshot is not None:
                _merge_product(product, snapshot)
            details = ProductDetailsUpdated(
                product_id=product_id,
                product_name=product.name,
                changed_fields=changed,
            )
            return self._commit(
                MutationKind.UPDATE_PRODUCT_DETAILS, EntityType.PRODUCT, product_id, product_id, details, batch_id
            )

    async def set_product_quantity(
        self,
        product_id: str,
        quantity: float,
        batch_id: Optional[str] = None,
    ) -> MutationOutcome:
        """Set the stored quantity of a product that has no lots."""
        if quantity is None or quantity < 0:
            raise ValidationFailure("Quantity cannot be negative")
        batch_id = batch_id or new_id()

        async with self.lock_for(EntityType.PRODUCT, product_id):
            product = self._require_product(product_id)
            if product.lots:
                raise ValidationFailure(
                    f"{product.name} is tracked by lots; its quantity is the sum of its lots"
                )
            before = product.quantity
            if quantity == before:
                raise ValidationFailure(f"{product.name} already has quantity {before}")

            product.quantity = quantity
            self._applied()
            try:
                snapshot = await self._confirm(
                    lambda: self._context.require_remote().update_product(
                        product_id, {"quantity": quantity}, batch_id
                    )
                )
            except RemoteFailure as e:
                product.quantity = before
                return self._roll_back(
                    MutationKind.SET_PRODUCT_QUANTITY, product_id, product_id, e, f"Could not change {product.name}"
                )

            if snapshot is not None:
                _merge_product(product, snapshot)
            after = derive_quantity(product)
            details = ProductQuantityChanged(
                action="add" if after > before else "remove",
                product_id=product_id,
                product_name=product.name,
                quantity_changed=abs(after - before),
                quantity_before=before,
                quantity_after=after,
            )
            return self._commit(
                MutationKind.SET_PRODUCT_QUANTITY, EntityType.PRODUCT, product_id, product_id, details, batch_id
            )

    async def remove_product(self, product_id: str, batch_id: Optional[str] = None) -> MutationOutcome:
        """Remove a product together with its lots."""
        batch_id = batch_id or new_id()

        async with self.lock_for(EntityType.PRODUCT, product_id):
            product = self._require_product(product_id)
            index = _index_of(self._products, product_id) or 0
            self._products.pop(index)
            self._applied()
            try:
                await self._confirm(lambda: self._context.require_remote().delete_product(product_id, batch_id))
            except RemoteFailure as e:
                _reinsert(self._products, index, product)
                return self._roll_back(
                    MutationKind.REMOVE_PRODUCT, product_id, product_id, e, f"Could not remove {product.name}"
                )

            details = ProductDeleted(
                product_id=product_id,
                product_name=product.name,
                quantity_before=derive_quantity(product),
            )
            return self._commit(
                MutationKind.REMOVE_PRODUCT, EntityType.PRODUCT, product_id, product_id, details, batch_id
            )

    # ===== Lots =====

    async def create_lot(
        self,
        product_id: str,
        quantity: float,
        expiry_date: date,
        batch_id: Optional[str] = None,
    ) -> MutationOutcome:
        """Add a lot to a product."""
        quantity = _require_lot_quantity(quantity)
        if not isinstance(expiry_date, date):
            raise ValidationFailure("A lot needs an expiry date")
        batch_id = batch_id or new_id()

        lot = Lot(product_id=product_id, quantity=quantity, expiry_date=expiry_date)
        async with self.lock_for(EntityType.LOT, lot.id):
            product = self._require_product(product_id)
            temp_id = lot.id
            prior_quantity = product.quantity
            had_lots = bool(product.lots)
            product.lots.append(lot)
            sync_quantity(product)
            self._applied()
            try:
                snapshot = await self._confirm(
                    lambda: self._context.require_remote().create_lot(
                        product_id, _lot_payload(quantity, expiry_date), batch_id
                    )
                )
            except RemoteFailure as e:
                _remove_by_id(product.lots, temp_id)
                # Other lot calls of the batch may have committed meanwhile
                product.quantity = lot_total(product) if had_lots else prior_quantity
                sync_quantity(product)
                return self._roll_back(
                    MutationKind.CREATE_LOT, temp_id, product_id, e, f"Could not add a lot to {product.name}"
                )

            if snapshot is not None:
                _merge_lot(lot, snapshot)
            sync_quantity(product)
            details = LotCreated(
                lot_id=lot.id,
                product_id=product_id,
                quantity_after=lot.quantity,
                expiry_date=lot.expiry_date,
            )
            return self._commit(MutationKind.CREATE_LOT, EntityType.LOT, lot.id, product_id, details, batch_id)

    async def update_lot(
        self,
        lot_id: str,
        quantity: Optional[float] = None,
        expiry_date: Optional[date] = None,
        batch_id: Optional[str] = None,
    ) -> MutationOutcome:
        """Change the quantity and/or expiry date of a lot."""
        if quantity is None and expiry_date is None:
            raise ValidationFailure("Nothing to update on the lot")
        if quantity is not None:
            quantity = _require_lot_quantity(quantity)
        batch_id = batch_id or new_id()

        async with self.lock_for(EntityType.LOT, lot_id):
            product, lot = self._require_lot(lot_id)
            prior = lot.model_copy()
            new_quantity = quantity if quantity is not None else lot.quantity
            new_expiry = expiry_date if expiry_date is not None else lot.expiry_date
            if new_quantity == prior.quantity and new_expiry == prior.expiry_date:
                raise ValidationFailure(f"Lot {lot_id} already has these values")

            lot.quantity = new_quantity
            lot.expiry_date = new_expiry
            sync_quantity(product)
            self._applied()
            try:
                snapshot = await self._confirm(
                    lambda: self._context.require_remote().update_lot(
                        lot_id, _lot_payload(new_quantity, new_expiry), batch_id
                    )
                )
            except RemoteFailure as e:
                lot.quantity = prior.quantity
                lot.expiry_date = prior.expiry_date
                sync_quantity(product)
                return self._roll_back(
                    MutationKind.UPDATE_LOT, lot_id, product.id, e, f"Could not update a lot of {product.name}"
                )

            if snapshot is not None:
                _merge_lot(lot, snapshot)
            sync_quantity(product)
            details = LotUpdated(
                lot_id=lot_id,
                product_id=product.id,
                quantity_before=prior.quantity,
                quantity_after=lot.quantity,
                quantity_changed=lot.quantity - prior.quantity,
                expiry_date_old=prior.expiry_date,
                expiry_date_new=lot.expiry_date,
            )
            return self._commit(MutationKind.UPDATE_LOT, EntityType.LOT, lot_id, product.id, details, batch_id)

    async def delete_lot(self, lot_id: str, batch_id: Optional[str] = None) -> MutationOutcome:
        """Remove a lot from its product."""
        batch_id = batch_id or new_id()

        async with self.lock_for(EntityType.LOT, lot_id):
            product, lot = self._require_lot(lot_id)
            prior_quantity = product.quantity
            index = _index_of(product.lots, lot_id) or 0
            product.lots.pop(index)
            # Removing the last lot leaves nothing to sum
            product.quantity = lot_total(product)
            self._applied()
            try:
                await self._confirm(lambda: self._context.require_remote().delete_lot(lot_id, batch_id))
            except RemoteFailure as e:
                _reinsert(product.lots, index, lot)
                product.quantity = prior_quantity
                sync_quantity(product)
                return self._roll_back(
                    MutationKind.DELETE_LOT, lot_id, product.id, e, f"Could not remove a lot of {product.name}"
                )

            details = LotDeleted(
                lot_id=lot_id,
                product_id=product.id,
                quantity_before=lot.quantity,
                expiry_date=lot.expiry_date,
            )
            return self._commit(MutationKind.DELETE_LOT, EntityType.LOT, lot_id, product.id, details, batch_id)
