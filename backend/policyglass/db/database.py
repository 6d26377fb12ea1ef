"""Database engine & session utilities.

Sync engine + classic session maker.  The async job pipeline never touches a
session on the event loop thread; :class:`policyglass.services.job_store.JobStore`
hands session work to a threadpool.
"""

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from policyglass.config import settings
from policyglass.db.base import Base

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine & session factory
# ---------------------------------------------------------------------------


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine, adjusting SQLite so it can be shared across threads."""
    kwargs: dict[str, Any] = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # A single shared connection, otherwise every thread sees its own empty DB
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


logger.info("Creating database engine for %s", settings.DATABASE_URL.split('@')[-1])
engine = build_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)

# Create a configured "SessionLocal" class
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables(bind: Engine = engine) -> None:
    """Create all tables if they do not yet exist. Harmless when they do."""
    import policyglass.models  # noqa: F401 - registers every mapped class on Base

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables ensured")


def get_db():
    """Yields a database session and ensures it's closed after use."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        logger.debug("DB session closed")
