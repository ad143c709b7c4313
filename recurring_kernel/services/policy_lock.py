"""
PolicyLockManager -- at most one cycle in flight per policy.

Responsibility:
    Serializes cycles of the same policy while cycles of different
    policies run in parallel.  Two layers:

    1. An in-process ``threading.Lock`` per policy (scheduler worker
       threads of one engine process).
    2. An optional durable lease row in ``policy_leases`` (separate engine
       processes sharing one database).  A lease expires after its TTL so a
       crashed holder does not block the policy forever.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Held by PolicyCycleRunner for the whole cycle.

Failure modes:
    - PolicyLockedError: the policy is busy.  Acquisition never blocks;
      the scheduler simply tries again on the next tick.
"""

import os
import socket
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from recurring_kernel.domain.clock import as_utc
from recurring_kernel.exceptions import PolicyLockedError
from recurring_kernel.logging_config import get_logger
from recurring_kernel.models.lease import PolicyLeaseModel
from recurring_kernel.services.base import BaseStore

logger = get_logger("services.policy_lock")


def process_label() -> str:
    """Default engine name: host and pid of this process."""
    return f"{socket.gethostname()}:{os.getpid()}"


class SqlLeaseStore(BaseStore):
    """Durable per-policy leases with expiry."""

    def acquire(self, policy_id: UUID, holder: str, ttl_seconds: float) -> None:
        """
        Take or renew the lease for ``holder``.

        Raises:
            PolicyLockedError: Another holder has an unexpired lease.
        """
        now = self._clock.now()
        with self._scope() as session:
            lease = session.execute(
                select(PolicyLeaseModel)
                .where(PolicyLeaseModel.policy_id == policy_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

            if lease is None:
                # Another process may insert the same row concurrently
                savepoint = session.begin_nested()
                try:
                    lease = PolicyLeaseModel(policy_id=policy_id)
                    session.add(lease)
                    session.flush()
                    savepoint.commit()
                except IntegrityError:
                    savepoint.rollback()
                    logger.debug("lease_insert_race", extra={"policy_id": str(policy_id)})
                    raise PolicyLockedError(str(policy_id)) from None

            expires_at = as_utc(lease.expires_at)
            if (
                lease.holder is not None
                and lease.holder != holder
                and expires_at is not None
                and expires_at > now
            ):
                raise PolicyLockedError(str(policy_id), lease.holder)

            lease.holder = holder
            lease.acquired_at = now
            lease.expires_at = now + timedelta(seconds=ttl_seconds)

    def release(self, policy_id: UUID, holder: str) -> None:
        with self._scope() as session:
            lease = session.execute(
                select(PolicyLeaseModel)
                .where(PolicyLeaseModel.policy_id == policy_id)
                .with_for_update()
            ).scalar_one_or_none()
            if lease is not None and lease.holder == holder:
                lease.holder = None
                lease.expires_at = None


class PolicyLockManager:
    """
    Per-policy mutual exclusion.

    Usage:
        locks = PolicyLockManager(lease_store=SqlLeaseStore(factory, clock),
                                  holder="engine-1")
        with locks.hold(policy_id):
            ...  # run the cycle

    The lease holder is the engine name plus a token unique to this
    manager, so two engines configured with the same name still exclude
    each other.
    """

    def __init__(
        self,
        lease_store: SqlLeaseStore | None = None,
        holder: str | None = None,
        lease_ttl_seconds: float = 900,
    ):
        self._lease_store = lease_store
        self._holder = f"{holder or process_label()}#{uuid4().hex[:12]}"
        self._lease_ttl_seconds = lease_ttl_seconds
        self._locks: dict[UUID, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, policy_id: UUID) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(policy_id)
            if lock is None:
                lock = self._locks[policy_id] = threading.Lock()
            return lock

    @property
    def holder(self) -> str:
        return self._holder

    def is_held(self, policy_id: UUID) -> bool:
        return self._lock_for(policy_id).locked()

    @contextmanager
    def hold(self, policy_id: UUID) -> Iterator[None]:
        lock = self._lock_for(policy_id)
        if not lock.acquire(blocking=False):
            raise PolicyLockedError(str(policy_id), self._holder)
        try:
            if self._lease_store is not None:
                self._lease_store.acquire(policy_id, self._holder, self._lease_ttl_seconds)
            try:
                yield
            finally:
                if self._lease_store is not None:
                    self._lease_store.release(policy_id, self._holder)
        finally:
            lock.release()
