"""
SQLAlchemy engine construction.

Both the policy store and the identity store share one engine. In-memory
SQLite URLs get a ``StaticPool`` so every thread sees the same database.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def is_sqlite_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or url.startswith("sqlite:///:memory:?")


def build_engine(url: str, echo: bool = False, pool_size: int = 5) -> Engine:
    """
    Create an SQLAlchemy engine for the configured database.

    Args:
        url: SQLAlchemy database URL
        echo: Log every SQL statement
        pool_size: Connection pool size for server databases

    Returns:
        Engine: Configured engine
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if is_sqlite_memory_url(url):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {"pool_size": pool_size, "pool_pre_ping": True}

    logger.info(f"Creating database engine for {url.split('://', 1)[0]}")
    return create_engine(url, echo=echo, **kwargs)
