"""SQLAlchemy engine, session factory and declarative base."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ..settings import settings

# SQLite connections are shared across FastAPI worker threads.
CONNECT_ARGS = {"check_same_thread": False} if settings.DB_URL.startswith("sqlite") else {}

engine = create_engine(settings.DB_URL, connect_args=CONNECT_ARGS)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """FastAPI dependency that yields a session and guarantees cleanup."""

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create every table registered on ``Base``."""

    from ..models import chemical, equipment, glassware, lab, ledger, request  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
