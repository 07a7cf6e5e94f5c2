"""SQLModel database engine and session management."""

import logging

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from signal_outcomes.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
engine_kwargs = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    # In-memory SQLite must share one connection or each session sees an empty DB
    if settings.database_url in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
    **engine_kwargs,
)


def create_db_and_tables():
    """Create all tables. Called on startup."""
    # Import models so their tables are registered on the metadata
    import signal_outcomes.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.debug("Database tables ensured")


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
