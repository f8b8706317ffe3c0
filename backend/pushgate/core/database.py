"""Database connection and session management"""
import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from pushgate.core.config import settings

engine_kwargs = {
    "echo": settings.DEBUG,  # Log SQL queries in debug mode
}

# SQLite requires check_same_thread=False for multi-threaded access
if settings.DATABASE_URL.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    _db_path = settings.DATABASE_URL.split("///", 1)[-1]
    if _db_path and _db_path != ":memory:":
        os.makedirs(os.path.dirname(_db_path) or ".", exist_ok=True)

# Create SQLAlchemy engine
engine = create_engine(settings.DATABASE_URL, **engine_kwargs)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Dependency for FastAPI routes to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_session(session_factory=None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions in non-request contexts.

    Used by the push repositories, which run inside dispatch calls where
    FastAPI dependency injection is not available.

    Usage:
        with get_db_session() as db:
            result = db.query(Model).all()
            db.commit()  # If modifications made

    Args:
        session_factory: Optional sessionmaker; defaults to the application's SessionLocal

    Automatically handles:
    - Session creation
    - Rollback on exception
    - Session cleanup (close)
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
