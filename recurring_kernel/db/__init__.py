"""Database layer - engine, base classes and audit-trail listeners."""

from recurring_kernel.db.base import (
    ENGINE_ACTOR_ID,
    UUID,
    Base,
    TokenAmount,
    TrackedBase,
    UUIDString,
)
from recurring_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "TokenAmount",
    "UUIDString",
    "UUID",
    "ENGINE_ACTOR_ID",
]
