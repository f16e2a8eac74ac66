"""User-level operations, each run under a single batch id."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Union

from pydantic import BaseModel

from .context import EngineContext
from .errors import PartialBatchFailure, RemoteFailure, ValidationFailure
from .executor import MutationExecutor, MutationOutcome
from .history import HistoryBatcher
from .models import Product, Unit, new_id
from .quantity import derive_quantity

logger = logging.getLogger(__name__)


class NewLot(BaseModel):
    """A lot to create on a product."""

    quantity: float
    expiry_date: date


class LotEdit(BaseModel):
    """Changes to an existing lot. Omitted fields keep their value."""

    lot_id: str
    quantity: Optional[float] = None
    expiry_date: Optional[date] = None


@dataclass
class OperationResult:
    """Per-mutation outcomes of one user operation."""

    batch_id: str
    outcomes: list[MutationOutcome] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(o.committed for o in self.outcomes)

    @property
    def failures(self) -> list[MutationOutcome]:
        return [o for o in self.outcomes if not o.committed]

    @property
    def committed(self) -> list[MutationOutcome]:
        return [o for o in self.outcomes if o.committed]

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any mutation of the operation rolled back."""
        if self.failures:
            raise PartialBatchFailure(self.batch_id, self.failures)


class InventoryOperations:
    """Composes executor mutations into operations that share one batch id."""

    def __init__(self, context: EngineContext, executor: MutationExecutor, batcher: HistoryBatcher) -> None:
        self._context = context
        self._executor = executor
        self._batcher = batcher

    def _require_product(self, product_id: str) -> Product:
        product = self._context.find_product(product_id)
        if product is None:
            raise ValidationFailure(f"Product {product_id} not found")
        return product

    def _finish(self, batch_id: str, outcomes: list[MutationOutcome], label: str) -> OperationResult:
        result = OperationResult(batch_id=batch_id, outcomes=outcomes)
        if result.all_succeeded:
            self._context.notices.success(label)
        elif result.committed:
            failed = ", ".join(f"{o.kind.value} {o.entity_id}" for o in result.failures)
            self._context.notices.warning(f"{label}: only partially saved, failed: {failed}")
        logger.info(
            f"Operation batch {batch_id}: {len(result.committed)} committed, {len(result.failures)} rolled back"
        )
        return result

    async def add_product(self, name: str, unit: Union[Unit, str], quantity: float = 0) -> OperationResult:
        batch_id = new_id()
        outcome = await self._executor.add_product(name, unit, quantity, batch_id=batch_id)
        return self._finish(batch_id, [outcome], f"Product {name.strip()} added")

    async def remove_product(self, product_id: str) -> OperationResult:
        product = self._require_product(product_id)
        batch_id = new_id()
        outcome = await self._executor.remove_product(product_id, batch_id=batch_id)
        return self._finish(batch_id, [outcome], f"Product {product.name} removed")

    async def adjust_quantity(self, product_id: str, delta: float) -> OperationResult:
        """Add (positive delta) or remove (negative delta) stock on a product without lots."""
        product = self._require_product(product_id)
        if not delta:
            raise ValidationFailure("Quantity change must not be zero")
        new_quantity = product.quantity + delta
        if new_quantity < 0:
            raise ValidationFailure(
                f"Cannot remove {-delta} {product.unit.value} from {product.name}: only {product.quantity} left"
            )
        batch_id = new_id()
        outcome = await self._executor.set_product_quantity(product_id, new_quantity, batch_id=batch_id)
        verb = "added to" if delta > 0 else "removed from"
        return self._finish(batch_id, [outcome], f"{abs(delta)} {product.unit.value} {verb} {product.name}")

    def _check_edits(
        self,
        product: Product,
        new_lots: Sequence[NewLot],
        updated_lots: Sequence[LotEdit],
        deleted_lot_ids: Sequence[str],
    ) -> None:
        owned = {lot.id for lot in product.lots}
        for draft in new_lots:
            if draft.quantity <= 0:
                raise ValidationFailure("Lot quantity must be greater than zero")
        for edit in updated_lots:
            if edit.lot_id not in owned:
                raise ValidationFailure(f"Lot {edit.lot_id} does not belong to {product.name}")
            if edit.quantity is not None and edit.quantity <= 0:
                raise ValidationFailure("Lot quantity must be greater than zero")
        for lot_id in deleted_lot_ids:
            if lot_id not in owned:
                raise ValidationFailure(f"Lot {lot_id} does not belong to {product.name}")
        touched = [e.lot_id for e in updated_lots] + list(deleted_lot_ids)
        if len(touched) != len(set(touched)):
            raise ValidationFailure("A lot can only be edited or deleted once per save")

    async def save_product_edits(
        self,
        product_id: str,
        name: Optional[str] = None,
        unit: Optional[Union[Unit, str]] = None,
        new_lots: Sequence[NewLot] = (),
        updated_lots: Sequence[LotEdit] = (),
        deleted_lot_ids: Sequence[str] = (),
    ) -> OperationResult:
        """Save a product edit form: details plus any number of lot changes.

        All mutations share one batch id. Lot mutations run concurrently; when
        at least one of them commits, a batch context record captures the
        product's total before and after.
        """
        product = self._require_product(product_id)
        self._check_edits(product, new_lots, updated_lots, deleted_lot_ids)

        if unit is not None and unit not in {u.value for u in Unit}:
            raise ValidationFailure(f"Invalid unit {unit!r}. Must be 'L' or 'kg'.")
        name_changed = name is not None and name.strip() != product.name
        unit_changed = unit is not None and Unit(unit) != product.unit
        if not (name_changed or unit_changed or new_lots or updated_lots or deleted_lot_ids):
            raise ValidationFailure(f"No changes to save for {product.name}")

        batch_id = new_id()
        quantity_before = derive_quantity(product)
        outcomes: list[MutationOutcome] = []

        if name_changed or unit_changed:
            outcomes.append(
                await self._executor.update_product_details(
                    product_id,
                    name=name if name_changed else None,
                    unit=unit if unit_changed else None,
                    batch_id=batch_id,
                )
            )

        lot_calls = [
            *(self._executor.create_lot(product_id, d.quantity, d.expiry_date, batch_id=batch_id) for d in new_lots),
            *(
                self._executor.update_lot(e.lot_id, e.quantity, e.expiry_date, batch_id=batch_id)
                for e in updated_lots
            ),
            *(self._executor.delete_lot(lot_id, batch_id=batch_id) for lot_id in deleted_lot_ids),
        ]
        lot_outcomes = list(await asyncio.gather(*lot_calls)) if lot_calls else []
        outcomes.extend(lot_outcomes)

        if any(o.committed for o in lot_outcomes):
            await self._record_context(product, quantity_before, batch_id)

        return self._finish(batch_id, outcomes, f"Changes to {product.name} saved")

    async def _record_context(self, product: Product, quantity_before: float, batch_id: str) -> None:
        try:
            await self._batcher.record_product_batch_context(
                product.id,
                product.name,
                quantity_before,
                derive_quantity(product),
                batch_id,
            )
        except RemoteFailure as e:
            # The lot changes themselves are committed; only the summary is missing
            self._context.notices.warning(f"Batch summary for {product.name} was not recorded: {e}")

    async def add_lot(self, product_id: str, quantity: float, expiry_date: date) -> OperationResult:
        return await self.save_product_edits(
            product_id, new_lots=[NewLot(quantity=quantity, expiry_date=expiry_date)]
        )

    async def update_lot(
        self, lot_id: str, quantity: Optional[float] = None, expiry_date: Optional[date] = None
    ) -> OperationResult:
        product, _ = self._context.find_lot(lot_id)
        if product is None:
            raise ValidationFailure(f"Lot {lot_id} not found")
        return await self.save_product_edits(
            product.id, updated_lots=[LotEdit(lot_id=lot_id, quantity=quantity, expiry_date=expiry_date)]
        )

    async def remove_lot(self, lot_id: str) -> OperationResult:
        product, _ = self._context.find_lot(lot_id)
        if product is None:
            raise ValidationFailure(f"Lot {lot_id} not found")
        return await self.save_product_edits(product.id, deleted_lot_ids=[lot_id])
