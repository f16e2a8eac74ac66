"""Pydantic models for products, lots, change records and batch groups.

Field aliases follow the server of record's JSON, so the same models parse
server responses and the local mirror.
"""

import json
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationInfo,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new entity or batch identifier."""
    return str(uuid.uuid4())


class OperatingMode(str, Enum):
    """Where the session's source of truth lives."""

    CONNECTED = "connected"
    LOCAL = "local"


class Unit(str, Enum):
    """Measurement unit of a product."""

    VOLUME = "L"
    MASS = "kg"


class EntityType(str, Enum):
    """Kind of entity a change record refers to."""

    PRODUCT = "product"
    LOT = "lote"
    PRODUCT_BATCH_CONTEXT = "product_batch_context"


# ===== Inventory =====


class Lot(BaseModel):
    """A dated sub-quantity of a product."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId"))
    quantity: float = Field(ge=0)
    expiry_date: date = Field(alias="data_validade")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"<Lot(id={self.id}, product_id={self.product_id}, quantity={self.quantity})>"


class Product(BaseModel):
    """A stocked product, optionally subdivided into lots."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_id)
    name: str
    unit: Unit
    quantity: float = 0
    lots: list[Lot] = Field(default_factory=list, alias="lotes")

    @field_validator("lots", mode="before")
    @classmethod
    def _null_lots(cls, value: Any) -> Any:
        return [] if value is None else value

    def find_lot(self, lot_id: str) -> Optional[Lot]:
        return next((lot for lot in self.lots if lot.id == lot_id), None)

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, name='{self.name}', quantity={self.quantity})>"


# ===== Change details (tagged by action) =====


class _Details(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ChangedField(BaseModel):
    """A single field altered by a product detail update."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    field: str
    old_value: Any = None
    new_value: Any = None


class ProductCreated(_Details):
    action: Literal["created"] = "created"
    product_id: str
    product_name: str
    quantity_after: Optional[float] = None
    is_new_product: bool = True


class ProductDeleted(_Details):
    action: Literal["deleted"] = "deleted"
    product_id: str
    product_name: str
    quantity_before: Optional[float] = None
    is_product_removal: bool = True


class ProductDetailsUpdated(_Details):
    action: Literal["product_details_updated"] = "product_details_updated"
    product_id: str
    product_name: str
    changed_fields: list[ChangedField] = Field(default_factory=list)


class ProductQuantityChanged(_Details):
    """Quantity movement on a product without lots."""

    action: Literal["add", "remove"]
    product_id: str
    product_name: str
    quantity_changed: float
    quantity_before: float
    quantity_after: float


class LotCreated(_Details):
    action: Literal["lote_created"] = "lote_created"
    lot_id: str = Field(alias="loteId")
    product_id: str
    quantity_after: float
    expiry_date: Optional[date] = Field(default=None, alias="dataValidade")


class LotUpdated(_Details):
    action: Literal["lote_updated"] = "lote_updated"
    lot_id: str = Field(alias="loteId")
    product_id: str
    quantity_before: float
    quantity_after: float
    quantity_changed: Optional[float] = None
    expiry_date_old: Optional[date] = Field(default=None, alias="dataValidadeOld")
    expiry_date_new: Optional[date] = Field(default=None, alias="dataValidadeNew")


class LotDeleted(_Details):
    action: Literal["lote_deleted"] = "lote_deleted"
    lot_id: str = Field(alias="loteId")
    product_id: str
    quantity_before: float
    expiry_date: Optional[date] = Field(default=None, alias="dataValidade")


class ProductBatchContext(_Details):
    """Snapshot of a product's total quantity around one batch."""

    action: Literal["product_batch_context"] = "product_batch_context"
    product_id: str
    product_name_snapshot: str
    quantity_before_batch: float
    quantity_after_batch: float


ChangeDetails = Annotated[
    Union[
        ProductCreated,
        ProductDeleted,
        ProductDetailsUpdated,
        ProductQuantityChanged,
        LotCreated,
        LotUpdated,
        LotDeleted,
        ProductBatchContext,
    ],
    Field(discriminator="action"),
]

# Server-side lot records use the bare verbs
_LOT_ACTIONS = {"created": "lote_created", "updated": "lote_updated", "deleted": "lote_deleted"}


def normalize_details(entity_type: Any, details: dict[str, Any]) -> dict[str, Any]:
    """Map server action tags onto the closed local action set."""
    if isinstance(entity_type, EntityType):
        entity_type = entity_type.value
    action = details.get("action")
    if entity_type == EntityType.LOT.value and action in _LOT_ACTIONS:
        action = _LOT_ACTIONS[action]
    elif entity_type == EntityType.PRODUCT.value and action == "updated":
        action = "product_details_updated"
    elif entity_type == EntityType.PRODUCT_BATCH_CONTEXT.value and action is None:
        action = "product_batch_context"
    if action != details.get("action"):
        details = {**details, "action": action}
    return details


class ChangeRecord(BaseModel):
    """One append-only audit entry."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    entity_type: EntityType
    entity_id: str
    details: ChangeDetails = Field(
        validation_alias=AliasChoices("details", "changes"),
        serialization_alias="details",
    )
    batch_id: str
    created_at: datetime = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("createdAt", "created_at", "date"),
        serialization_alias="createdAt",
    )
    # Filled in by the grouped history view
    product_name_context: Optional[str] = None
    product_current_total_quantity: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_action(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        key = next((k for k in ("details", "changes") if k in data), None)
        if key is None:
            return data
        details = data[key]
        if isinstance(details, (str, bytes)):
            details = json.loads(details)
        if isinstance(details, dict):
            entity_type = data.get("entity_type", data.get("entityType"))
            details = normalize_details(entity_type, details)
        return {**data, key: details}

    @property
    def action(self) -> str:
        return self.details.action


# ===== Grouped history =====


class ProductBatchSummary(BaseModel):
    """Per-product quantity movement within one batch."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    name_snapshot: str = Field(alias="productName")
    quantity_before_batch: Optional[float] = Field(default=None, alias="totalQuantityBeforeBatch")
    quantity_after_batch: Optional[float] = Field(default=None, alias="totalQuantityAfterBatch")
    net_change: float = Field(alias="netQuantityChangeInBatch")


class BatchGroup(BaseModel):
    """All change records sharing one batch id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    batch_id: str
    created_at: datetime
    records: list[ChangeRecord] = Field(default_factory=list)
    record_count: int = 0
    product_summaries: dict[str, ProductBatchSummary] = Field(default_factory=dict)

    @field_validator("records", "product_summaries", mode="before")
    @classmethod
    def _null_collections(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return [] if info.field_name == "records" else {}
        return value


class BatchGroupPage(BaseModel):
    """One page of batch groups, newest first."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    groups: list[BatchGroup] = Field(default_factory=list)
    total_batches: int = 0
    page: int = 1
    page_size: int
    total_pages: int = 1

    @field_validator("groups", mode="before")
    @classmethod
    def _null_groups(cls, value: Any) -> Any:
        return [] if value is None else value


class InventoryState(BaseModel):
    """Products plus the flat history list, as held in memory and persisted."""

    products: list[Product] = Field(default_factory=list)
    history_records: list[ChangeRecord] = Field(default_factory=list)

    def find_product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.products if p.id == product_id), None)


PRODUCT_LIST = TypeAdapter(list[Product])
RECORD_LIST = TypeAdapter(list[ChangeRecord])
