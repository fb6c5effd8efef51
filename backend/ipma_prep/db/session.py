"""Engine and session helpers for the relational remote store."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Generator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_settings

_IN_MEMORY_SQLITE = ("sqlite://", "sqlite:///:memory:")


def create_engine_for_url(
    database_url: str,
    *,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
) -> Engine:
    options: Dict[str, Any] = {"echo": echo, "future": True, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=pool_size, max_overflow=max_overflow)
        return create_engine(database_url, **options)

    options["connect_args"] = {"check_same_thread": False}
    if database_url in _IN_MEMORY_SQLITE:
        # Every session must share the single in-memory database.
        options["poolclass"] = StaticPool
    return create_engine(database_url, **options)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    """Session factory for the configured database, built on first use."""
    settings = get_settings()
    if not settings.database_url:
        raise RuntimeError("IPMA_DATABASE_URL must be configured before using the database.")
    engine = create_engine_for_url(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    return build_session_factory(engine)


@contextmanager
def session_scope(
    *,
    commit: bool = True,
    factory: Optional[sessionmaker[Session]] = None,
) -> Generator[Session, None, None]:
    session = (factory or get_session_factory())()
    try:
        yield session
        if commit:
            session.commit()
    except Exception:  # noqa: BLE001
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "build_session_factory",
    "create_engine_for_url",
    "get_session_factory",
    "session_scope",
]
