"""Database package initialization."""

from .crud import (
    delete_namespace,
    get_entry,
    read_payload,
    write_payload,
)
from .engine import SessionLocal, close_db, init_db
from .models import Base, MirrorEntry

__all__ = [
    # Models
    "Base",
    "MirrorEntry",
    # Engine
    "SessionLocal",
    "init_db",
    "close_db",
    # CRUD
    "get_entry",
    "read_payload",
    "write_payload",
    "delete_namespace",
]
