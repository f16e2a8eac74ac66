"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class MirrorEntry(Base):
    """Model for one namespaced key-value blob of the local mirror."""

    __tablename__ = "mirror_entries"
    __table_args__ = (
        UniqueConstraint("namespace", "key", name="uq_mirror_namespace_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    namespace: Mapped[str] = mapped_column(String, nullable=False, index=True)  # e.g. "lotkeeper:local-demo"
    key: Mapped[str] = mapped_column(String, nullable=False)  # "products" or "history"
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON document
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    def __repr__(self) -> str:
        return f"<MirrorEntry(namespace='{self.namespace}', key='{self.key}', size={len(self.payload)})>"
