from __future__ import annotations

from typing import Callable, Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .settings import settings


class Base(DeclarativeBase):
    pass


class _Database:
    """Lazily created engine and session factory for the configured URL."""

    def __init__(self):
        self.engine: Optional[Engine] = None
        self.session_factory: Optional[sessionmaker] = None

    def configure(self, database_url: Optional[str] = None) -> Engine:
        url = database_url or settings.database_url
        # SQLite connections are shared between the event loop and worker threads
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=True)
        return self.engine


_db = _Database()


def init_engine(database_url: Optional[str] = None) -> Engine:
    return _db.configure(database_url)


def get_engine() -> Engine:
    if _db.engine is None:
        _db.configure()
    return _db.engine


def get_session_factory() -> Callable[[], Session]:
    """Session factory; pass it to PlanJob and CompactionTrigger."""
    if _db.session_factory is None:
        _db.configure()
    return _db.session_factory


def create_schema():
    """Create all tables on the configured engine (no migrations)."""
    from . import models  # noqa: F401  registers mappers

    Base.metadata.create_all(bind=get_engine())


def get_db() -> Iterator[Session]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()
