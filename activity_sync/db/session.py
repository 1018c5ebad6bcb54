from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from fastapi import HTTPException
from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from activity_sync.config.settings import settings

# Lazy initialization to avoid import-time database connections
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _is_postgresql(url: str) -> bool:
    return "postgresql" in url.lower() or "postgres" in url.lower()


def _get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        url = settings.database_url
        connect_args: dict = {}
        if "sqlite" in url.lower():
            logger.warning("Using SQLite database (local development only)")
            connect_args = {"check_same_thread": False}
        elif _is_postgresql(url):
            connect_args = {
                "connect_timeout": 10,
                "application_name": "activity-sync",
            }

        _engine = create_engine(
            url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        logger.info("Database engine initialized")
    return _engine


def _get_session_local() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=_get_engine())
    return _SessionLocal


def init_db() -> None:
    """Create tables and verify the connection on startup."""
    from activity_sync.db.models import Base

    engine = _get_engine()
    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("Database connection test successful")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get database session context manager.

    Commits on clean exit. HTTPException is re-raised without logging; any
    other exception is logged as a database error, rolled back and re-raised.
    """
    session = _get_session_local()()
    try:
        yield session
        if session.dirty or session.new or session.deleted:
            session.commit()
    except HTTPException:
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Database session error, rolling back: {e}")
        session.rollback()
        raise
    finally:
        session.close()
