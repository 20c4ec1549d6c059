from collections.abc import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from vibecoder.core.config import settings

_connect_args = (
    {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
)

engine = create_engine(
    settings.DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """For work that outlives the request, e.g. recording a finished stream."""
    return SessionLocal


def init_db() -> None:
    # import models so every table is registered on the metadata
    from vibecoder.db.base import Base
    from vibecoder.models import download, project, transaction, user, webhook_event  # noqa: F401

    Base.metadata.create_all(bind=engine)
