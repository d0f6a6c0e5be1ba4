"""SQLAlchemy database configuration and session management."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from portfolio_recon.config import get_settings

settings = get_settings()


def create_session_factory(database_url: str, **engine_kwargs) -> sessionmaker:
    """Build an engine and session factory for a database URL."""
    if database_url.startswith("sqlite"):
        # Sessions are opened from fetch and scheduler threads
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    bind = create_engine(database_url, echo=False, **engine_kwargs)
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        expire_on_commit=False,  # Allow accessing attributes after commit/close
    )


SessionLocal = create_session_factory(settings.database_url)
engine = SessionLocal.kw["bind"]


@contextmanager
def get_db(session_factory: sessionmaker = None) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with get_db() as db:
            db.query(Portfolio).all()
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(session_factory: sessionmaker = None) -> None:
    """Initialize database tables."""
    from .models import Base

    bind = (session_factory or SessionLocal).kw["bind"]
    Base.metadata.create_all(bind=bind)
