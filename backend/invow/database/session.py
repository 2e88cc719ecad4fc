"""
Engine and session plumbing for the invoice and subscription tables.

Repositories and services only flush. The transaction boundary lives
here: one transaction per HTTP request (get_db_session) or per scripted
unit of work (session_scope), so an invoice row and the usage counter it
moved always commit together.

Usage:
    from invow.database.session import get_db_session

    @router.post("/api/invoices")
    def create_invoice(db: Session = Depends(get_db_session)):
        ...

    with session_scope() as db:
        InvoiceService(db).create_invoice(user_id, "INV-001")
"""

import os
import logging
from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from fastapi import HTTPException, status

logger = logging.getLogger(__name__)

# Process-wide, created lazily on first use
_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """
    Read DATABASE_URL, rewriting the legacy postgres:// scheme.

    Raises:
        ValueError: If DATABASE_URL is unset
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def get_engine() -> Engine:
    """
    Engine for DATABASE_URL, built once per process.

    SQLite (local runs) gets a thread-shareable connection. Server
    databases get a small pool with pre-ping, since the conditional usage
    updates are short and frequent.
    """
    global _engine
    if _engine is not None:
        return _engine

    try:
        url = _get_database_url()
    except ValueError as e:
        logger.error("Cannot create database engine", extra={"error": str(e)})
        raise

    if url.startswith("sqlite"):
        _engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(
            url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
    logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the engine and forget the factory (shutdown, tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def _run_in_transaction(session: Session) -> Iterator[Session]:
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency: one session and one transaction per request.

    Committed when the handler returns, rolled back when it raises.
    Responds 503 when DATABASE_URL is not configured.
    """
    try:
        factory = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )
    yield from _run_in_transaction(factory())


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Transaction for scripts and jobs outside a request.

    Raises:
        RuntimeError: If the database is not configured
    """
    try:
        factory = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}") from e
    yield from _run_in_transaction(factory())


def init_db() -> None:
    """Create missing tables on the configured engine."""
    from invow.db_base import Base
    from invow.models import subscription, invoice  # noqa: F401

    Base.metadata.create_all(bind=get_engine())
    logger.info("Database schema ensured")
