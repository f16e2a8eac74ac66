"""Batch reconciliation reader: paginated batch groups from either source.

The local path rebuilds exactly the shape the server's grouped history
endpoint returns, so callers cannot tell the two apart.
"""

import logging
import math
from collections.abc import Iterable, Mapping
from typing import Optional

from .context import EngineContext
from .errors import ValidationFailure
from .models import (
    BatchGroup,
    BatchGroupPage,
    ChangeDetails,
    ChangeRecord,
    EntityType,
    LotCreated,
    LotDeleted,
    LotUpdated,
    ProductBatchContext,
    ProductBatchSummary,
    ProductCreated,
    ProductDeleted,
    ProductDetailsUpdated,
    ProductQuantityChanged,
)

logger = logging.getLogger(__name__)

CONTEXT_UNAVAILABLE = "Context Unavailable"


def total_pages_for(total_batches: int, page_size: int) -> int:
    """Number of pages for a batch count; never less than one."""
    return max(1, math.ceil(total_batches / page_size))


def validate_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationFailure(f"Page must be 1 or greater, got {page}")
    if page_size < 1:
        raise ValidationFailure(f"Page size must be 1 or greater, got {page_size}")


def quantity_delta(details: ChangeDetails) -> Optional[float]:
    """Signed quantity movement described by one record, or None when it moves nothing."""
    if isinstance(details, (ProductCreated, LotCreated)):
        return details.quantity_after
    if isinstance(details, (ProductDeleted, LotDeleted)):
        return -details.quantity_before if details.quantity_before is not None else None
    if isinstance(details, (ProductQuantityChanged, LotUpdated)):
        return details.quantity_after - details.quantity_before
    return None


class _SummaryBuilder:
    """Accumulates a product summary from individual records when no context exists."""

    def __init__(self, product_id: str, name: Optional[str]) -> None:
        self.product_id = product_id
        self.name = name
        self.before: Optional[float] = None
        self.after: Optional[float] = None
        self.net = 0.0
        self.moved = False

    def product_totals(self, before: Optional[float], after: Optional[float]) -> None:
        if self.before is None and before is not None:
            self.before = before
        if after is not None:
            self.after = after
        self.net += (after or 0) - (before or 0)
        self.moved = True

    def lot_delta(self, delta: float) -> None:
        self.net += delta
        self.moved = True

    def build(self) -> ProductBatchSummary:
        return ProductBatchSummary(
            product_id=self.product_id,
            name_snapshot=self.name or CONTEXT_UNAVAILABLE,
            quantity_before_batch=self.before,
            quantity_after_batch=self.after,
            net_change=self.net,
        )


def _infer_summaries(
    records: Iterable[ChangeRecord], product_names: Mapping[str, str]
) -> dict[str, ProductBatchSummary]:
    builders: dict[str, _SummaryBuilder] = {}

    def builder(product_id: str) -> _SummaryBuilder:
        if product_id not in builders:
            builders[product_id] = _SummaryBuilder(product_id, product_names.get(product_id))
        return builders[product_id]

    for record in records:
        details = record.details
        if isinstance(details, ProductCreated):
            b = builder(details.product_id)
            b.name = details.product_name
            b.product_totals(0, details.quantity_after)
        elif isinstance(details, ProductDeleted):
            b = builder(details.product_id)
            b.name = details.product_name
            b.product_totals(details.quantity_before, 0)
        elif isinstance(details, ProductQuantityChanged):
            b = builder(details.product_id)
            b.name = details.product_name
            b.product_totals(details.quantity_before, details.quantity_after)
        elif isinstance(details, ProductDetailsUpdated):
            builder(details.product_id).name = details.product_name
        elif isinstance(details, (LotCreated, LotUpdated, LotDeleted)):
            builder(details.product_id).lot_delta(quantity_delta(details) or 0)

    return {pid: b.build() for pid, b in builders.items() if b.moved}


def _annotate(record: ChangeRecord, contexts: Mapping[str, ProductBatchContext]) -> ChangeRecord:
    """Attach the product name and batch total the way the grouped endpoint does."""
    if record.entity_type == EntityType.PRODUCT_BATCH_CONTEXT:
        return record
    context = contexts.get(record.details.product_id)
    if context is None:
        return record.model_copy(update={"product_name_context": CONTEXT_UNAVAILABLE})
    return record.model_copy(
        update={
            "product_name_context": context.product_name_snapshot,
            "product_current_total_quantity": context.quantity_after_batch,
        }
    )


def build_batch_group(
    batch_id: str,
    records: Iterable[ChangeRecord],
    product_names: Optional[Mapping[str, str]] = None,
) -> BatchGroup:
    """Build one group from the records sharing a batch id."""
    members = sorted(records, key=lambda r: r.created_at)
    contexts = {
        r.entity_id: r.details for r in members if isinstance(r.details, ProductBatchContext)
    }
    if contexts:
        summaries = {
            pid: ProductBatchSummary(
                product_id=pid,
                name_snapshot=c.product_name_snapshot,
                quantity_before_batch=c.quantity_before_batch,
                quantity_after_batch=c.quantity_after_batch,
                net_change=c.quantity_after_batch - c.quantity_before_batch,
            )
            for pid, c in contexts.items()
        }
    else:
        summaries = _infer_summaries(members, product_names or {})

    return BatchGroup(
        batch_id=batch_id,
        created_at=members[0].created_at,
        records=[_annotate(r, contexts) for r in members],
        record_count=len(members),
        product_summaries=summaries,
    )


def group_history_records(
    records: Iterable[ChangeRecord],
    page: int,
    page_size: int,
    product_names: Optional[Mapping[str, str]] = None,
) -> BatchGroupPage:
    """Group flat history records by batch id and return one page of groups.

    Groups are ordered newest first by their earliest record (batch id breaks
    ties); records inside a group are oldest first. A page past the end is
    clamped to the last page.
    """
    validate_paging(page, page_size)

    by_batch: dict[str, list[ChangeRecord]] = {}
    for record in records:
        by_batch.setdefault(record.batch_id, []).append(record)

    groups = [build_batch_group(batch_id, members, product_names) for batch_id, members in by_batch.items()]
    groups.sort(key=lambda g: (g.created_at, g.batch_id), reverse=True)

    total = len(groups)
    total_pages = total_pages_for(total, page_size)
    page = min(page, total_pages)
    start = (page - 1) * page_size
    return BatchGroupPage(
        groups=groups[start : start + page_size],
        total_batches=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


class BatchReconciliationReader:
    """Reads batch groups from the server when connected, or from local history."""

    def __init__(self, context: EngineContext, page_size: int = 5) -> None:
        self._context = context
        self.default_page_size = page_size

    async def get_batch_groups(self, page: int = 1, page_size: Optional[int] = None) -> BatchGroupPage:
        """Return one page of batch groups.

        A page beyond the last one falls back to the last populated page,
        and the returned ``page`` says which page was actually served.

        Raises:
            ValidationFailure: If page or page size is below 1
            RemoteFailure: If the server cannot be queried in connected mode
        """
        page_size = page_size if page_size is not None else self.default_page_size
        validate_paging(page, page_size)

        if not self._context.connected:
            names = {p.id: p.name for p in self._context.state.products}
            return group_history_records(self._context.state.history_records, page, page_size, names)

        remote = self._context.require_remote()
        result = await remote.fetch_batch_groups(page, page_size)
        total_pages = total_pages_for(result.total_batches, page_size)
        if page > total_pages:
            logger.info(f"History page {page} is past the last page, serving page {total_pages}")
            page = total_pages
            result = await remote.fetch_batch_groups(page, page_size)
            total_pages = total_pages_for(result.total_batches, page_size)
        return result.model_copy(update={"page": page, "page_size": page_size, "total_pages": total_pages})
