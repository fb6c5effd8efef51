"""Database utilities for the IPMA prep remote store."""

from .base import Base
from .session import (
    build_session_factory,
    create_engine_for_url,
    get_session_factory,
    session_scope,
)

__all__ = [
    "Base",
    "build_session_factory",
    "create_engine_for_url",
    "get_session_factory",
    "session_scope",
]
