"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata bases, and helpers:
- Base: declarative base for the relational records (assistants, documents,
  crawl queue, messages, usage counters).
- VectorBase: separate declarative base for the pgvector table, which is provisioned
  by the vector index adapter rather than by init_db.
- init_db: Creates the relational tables. Idempotent.
- session_scope: Context-managed transactional scope for imperative workflows.
- get_db: FastAPI dependency to yield a per-request SQLAlchemy Session.
- utcnow: Naive UTC timestamp used for every persisted time column.

Configuration is read from docchat.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from docchat.config import settings


def _engine_options(url: str) -> Dict[str, Any]:
    # In-memory SQLite must share one connection across threads and sessions
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


# SQLAlchemy setup
engine = create_engine(settings.DATABASE_URL, future=True, **_engine_options(settings.DATABASE_URL))
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine, future=True, expire_on_commit=False
)
Base = declarative_base()
VectorBase = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db() -> None:
    """Create relational tables from SQLAlchemy metadata.

    The vector table lives on VectorBase and is created by
    docchat.vector_index.PgVectorIndex.ensure_index.

    This function is idempotent and safe to run multiple times.
    """
    # Import models after Base is defined
    from docchat import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Yields:
        Session: A SQLAlchemy session bound to the configured engine.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator:
    """FastAPI dependency that yields a SQLAlchemy Session.

    Yields:
        Session: A session tied to the current request lifecycle.

    Notes:
        Ensures the session is closed after the request finishes. Route handlers
        commit explicitly through the service functions they call.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
