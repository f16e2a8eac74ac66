"""Database engine and session management for the local mirror.

The mirror is written synchronously right after every mutation, so it uses a
plain (non-async) engine; nothing here suspends the event loop for long.
"""

import logging

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)

# Create engine
engine: Engine = create_engine(
    settings.mirror_database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# Create session factory
SessionLocal = sessionmaker(
    engine,
    class_=Session,
    expire_on_commit=False,
    autoflush=False,
)


def init_db(bind: Engine = engine) -> None:
    """Initialize database tables.

    Creates all tables defined in the Base metadata.
    This should be called before the first mirror load.
    """
    logger.info("Initializing mirror tables...")
    Base.metadata.create_all(bind)
    logger.info("Mirror tables initialized successfully")


def close_db() -> None:
    """Close database engine and all connections."""
    logger.info("Closing mirror database connections...")
    engine.dispose()
    logger.info("Mirror database connections closed")
