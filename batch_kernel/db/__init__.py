"""Database layer - engine, base classes, sessions."""

from batch_kernel.db.base import UUID, Base, TimestampedBase, UUIDString
from batch_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "build_engine",
    "create_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "reset_engine",
    "session_scope",
    "Base",
    "TimestampedBase",
    "UUIDString",
    "UUID",
]
