"""
Database engine and session factory.

Services share one engine per process; components receive the session
factory and open short-lived sessions per unit of work.
"""

import functools

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from basecore.settings import get_settings


def create_db_engine(url: str) -> Engine:
    """
    Create an engine for a database URL.

    In-memory SQLite gets a single shared connection so every session sees
    the same database.
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, pool_pre_ping=True, echo=False)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@functools.lru_cache()
def get_engine() -> Engine:
    """Process-wide engine for DATABASE_URL (cached)."""
    return create_db_engine(get_settings().DATABASE_URL)


@functools.lru_cache()
def get_sessionmaker() -> sessionmaker:
    """Process-wide session factory (cached)."""
    return make_sessionmaker(get_engine())
