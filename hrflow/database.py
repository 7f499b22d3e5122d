"""
Database connection and session management for HRFlow.

Provides:
- SessionLocal: Factory for creating database sessions
- get_db(): Context manager for DB sessions
- engine: SQLAlchemy engine instance
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .core.config import Settings

settings = Settings.from_env()

if not settings.database_url:
    raise ValueError(
        "DATABASE_URL environment variable not set. "
        "Please configure it in .env file."
    )

_engine_kwargs = {"pool_pre_ping": True, "echo": False}
if settings.database_url.startswith("sqlite"):
    # Worker threads share the SQLite file
    _engine_kwargs["connect_args"] = {"check_same_thread": False}

engine = create_engine(settings.database_url, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db() as db:
            run = db.get(WorkflowRun, run_id)
            ...
            db.commit()

    The session is rolled back if an exception escapes and always closed.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
