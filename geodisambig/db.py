"""
SQLAlchemy setup for the authoritative gazetteer (PostGIS in production).

Engines are built per caller from an explicit URL; nothing here is a
process-wide connection.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


def make_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine; SQLite URLs get check_same_thread=False for the backfill worker."""
    connect_args = kwargs.pop("connect_args", {})
    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def init_db(engine: Engine) -> None:
    """Create tables if they don't exist (tests and local development only)."""
    from geodisambig.repositories import models  # noqa: F401  Ensures models are registered

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Session generator that always closes."""
    session = factory()
    try:
        yield session
    finally:
        session.close()
