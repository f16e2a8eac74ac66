"""History batching: typed change records under the caller's batch id."""

import logging
from typing import Any, Optional, Union

from pydantic import TypeAdapter, ValidationError

from .context import EngineContext
from .errors import ValidationFailure
from .models import (
    ChangeDetails,
    ChangeRecord,
    EntityType,
    ProductBatchContext,
    normalize_details,
)

logger = logging.getLogger(__name__)

_DETAILS = TypeAdapter(ChangeDetails)


class HistoryBatcher:
    """Appends change records to the audit log of the current session.

    Records are only written for committed mutations. The batch id always
    comes from the caller; this class never makes one up.
    """

    def __init__(self, context: EngineContext) -> None:
        self._context = context

    def record_change(
        self,
        entity_type: Union[EntityType, str],
        entity_id: str,
        details: Union[ChangeDetails, dict[str, Any]],
        batch_id: str,
    ) -> ChangeRecord:
        """Append one record and persist the mirror.

        Args:
            entity_type: Kind of entity that changed
            entity_id: ID of the changed entity
            details: Typed details, or a dict carrying an ``action`` tag
            batch_id: The operation's batch id, shared by every record of it

        Returns:
            The appended record

        Raises:
            ValidationFailure: If the batch id is empty or the details have no known action
        """
        if not batch_id:
            raise ValidationFailure("A change record needs the operation's batch id")
        try:
            entity_type = EntityType(entity_type)
        except ValueError as e:
            raise ValidationFailure(f"Unknown entity type: {entity_type}") from e
        if isinstance(details, dict):
            try:
                details = _DETAILS.validate_python(normalize_details(entity_type, details))
            except ValidationError as e:
                raise ValidationFailure(f"Invalid change details: {e}") from e

        record = ChangeRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
            batch_id=batch_id,
        )
        self._context.state.history_records.append(record)
        self._context.persist()
        logger.info(f"Recorded {record.action} on {entity_type.value} {entity_id} in batch {batch_id}")
        return record

    def find_context(self, product_id: str, batch_id: str) -> Optional[ChangeRecord]:
        """Return the batch context record already written for a product, if any."""
        for record in self._context.state.history_records:
            if (
                record.batch_id == batch_id
                and record.entity_type == EntityType.PRODUCT_BATCH_CONTEXT
                and record.entity_id == product_id
            ):
                return record
        return None

    async def record_product_batch_context(
        self,
        product_id: str,
        name_snapshot: str,
        quantity_before: float,
        quantity_after: float,
        batch_id: str,
    ) -> ChangeRecord:
        """Record the before/after totals of a product whose lots changed in a batch.

        Written at most once per product per batch. In connected mode the
        server is told first; if that fails RemoteFailure propagates and
        nothing is recorded locally.
        """
        if not batch_id:
            raise ValidationFailure("A batch context record needs the operation's batch id")
        existing = self.find_context(product_id, batch_id)
        if existing is not None:
            return existing

        details = ProductBatchContext(
            product_id=product_id,
            product_name_snapshot=name_snapshot,
            quantity_before_batch=quantity_before,
            quantity_after_batch=quantity_after,
        )
        if self._context.connected:
            payload = details.model_dump(by_alias=True, exclude={"action"})
            await self._context.require_remote().record_product_batch_context(payload, batch_id)
        return self.record_change(EntityType.PRODUCT_BATCH_CONTEXT, product_id, details, batch_id)
