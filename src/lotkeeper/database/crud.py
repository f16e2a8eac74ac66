"""CRUD operations for the namespaced mirror store."""

import logging
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .models import MirrorEntry

logger = logging.getLogger(__name__)


def get_entry(session: Session, namespace: str, key: str) -> Optional[MirrorEntry]:
    """Get a mirror entry by namespace and key.

    Args:
        session: Database session
        namespace: Storage namespace (one per operating mode)
        key: Entry key within the namespace

    Returns:
        The entry if found, None otherwise
    """
    result = session.execute(
        select(MirrorEntry).where(
            MirrorEntry.namespace == namespace,
            MirrorEntry.key == key,
        )
    )
    return result.scalar_one_or_none()


def read_payload(session: Session, namespace: str, key: str) -> Optional[str]:
    """Read the raw JSON payload stored under a key, or None if absent."""
    entry = get_entry(session, namespace, key)
    return entry.payload if entry else None


def write_payload(session: Session, namespace: str, key: str, payload: str) -> MirrorEntry:
    """Create or replace the payload stored under a key.

    Args:
        session: Database session
        namespace: Storage namespace
        key: Entry key within the namespace
        payload: Serialized JSON document

    Returns:
        The created or updated entry
    """
    entry = get_entry(session, namespace, key)
    if entry is None:
        entry = MirrorEntry(namespace=namespace, key=key, payload=payload)
        session.add(entry)
    else:
        entry.payload = payload
    session.commit()
    logger.debug(f"Wrote mirror entry {namespace}/{key} ({len(payload)} bytes)")
    return entry


def delete_namespace(session: Session, namespace: str) -> int:
    """Delete every entry in a namespace.

    Args:
        session: Database session
        namespace: Storage namespace to clear

    Returns:
        Number of entries removed
    """
    result = session.execute(delete(MirrorEntry).where(MirrorEntry.namespace == namespace))
    session.commit()
    removed: int = result.rowcount  # type: ignore[attr-defined]
    if removed:
        logger.info(f"Cleared {removed} mirror entries from {namespace}")
    return removed
