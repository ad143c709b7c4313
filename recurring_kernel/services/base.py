"""
BaseStore -- common constructor for the SQL-backed stores.

Responsibility:
    Gives every store a session factory, a clock and the actor id it stamps
    on rows it writes.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - One short transaction per store operation: each public method opens
      its own ``session_scope`` and commits before returning, so no
      database transaction stays open across chain queries, signing or
      confirmation polling.

Failure modes:
    - SQLAlchemy errors propagate after the scope rolls back.
"""

from abc import ABC
from collections.abc import Callable
from contextlib import AbstractContextManager
from uuid import UUID

from sqlalchemy.orm import Session

from recurring_kernel.db.base import ENGINE_ACTOR_ID
from recurring_kernel.db.engine import session_scope
from recurring_kernel.domain.clock import Clock, SystemClock


class BaseStore(ABC):
    """
    Abstract base class for the SQL-backed stores.

    Contract:
        Accepts a session factory (``sessionmaker``) rather than a session.
        Each operation draws its own session so stores are safe to share
        between scheduler worker threads.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        actor_id: UUID = ENGINE_ACTOR_ID,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

    def _scope(self) -> AbstractContextManager[Session]:
        return session_scope(self._session_factory)
