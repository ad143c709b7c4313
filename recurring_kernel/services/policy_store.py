"""
SqlPolicyStore -- persistence of policies and their scheduling state.

Responsibility:
    Creates policies (together with their progress row), serves the
    envelopes the cycle runner validates, lists policies that are due, and
    applies the lifecycle transitions the scheduler decides on.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - A policy and its progress row are created in one transaction.
    - An owner edit bumps config_version and re-activates an invalid
      policy; it may not shrink order_count below the orders already done.
    - A completed policy is never listed as due.

Failure modes:
    - PolicyNotFoundError: unknown policy id.
    - PolicyValidationError subclasses: configuration rejected at create or
      edit time.
"""

from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from recurring_kernel.domain.policy import (
    PolicyEnvelope,
    PolicyRecord,
    PolicyStatus,
    parse_config,
)
from recurring_kernel.exceptions import OutOfRangeError, PolicyNotFoundError
from recurring_kernel.logging_config import get_logger
from recurring_kernel.models.policy import PolicyModel
from recurring_kernel.models.progress import PolicyProgressModel
from recurring_kernel.services.base import BaseStore

logger = get_logger("services.policy_store")


class SqlPolicyStore(BaseStore):
    """Policy store backed by the ``policies`` table."""

    def __init__(
        self,
        session_factory,
        clock=None,
        supported_chains: Collection[str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(session_factory, clock, **kwargs)
        self._supported_chains = supported_chains

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        vault_id: str,
        config: Mapping[str, Any],
        created_by: UUID | None = None,
    ) -> PolicyRecord:
        """
        Store a new policy and its zeroed progress row.

        The first run is ``schedule.start_at`` when given, otherwise now.

        Raises:
            PolicyValidationError: The configuration is rejected.
        """
        payload = parse_config(config, supported_chains=self._supported_chains)
        first_run = payload.terms.schedule.start_at or self._clock.now()
        actor = created_by or self._actor_id

        with self._scope() as session:
            policy = PolicyModel(
                vault_id=vault_id,
                kind=payload.kind.value,
                config=dict(config),
                config_version=1,
                status=PolicyStatus.ACTIVE.value,
                next_run_at=first_run,
                schedule_anchor=first_run,
                created_by_id=actor,
            )
            session.add(policy)
            session.flush()
            session.add(
                PolicyProgressModel(
                    policy_id=policy.id,
                    order_count=payload.terms.order_count,
                    completed_count=0,
                    is_terminal=False,
                    version=0,
                    created_by_id=actor,
                )
            )
            session.flush()
            record = policy.to_record()

        logger.info(
            "policy_created",
            extra={
                "policy_id": str(record.policy_id),
                "vault_id": vault_id,
                "kind": payload.kind.value,
                "order_count": payload.terms.order_count,
            },
        )
        return record

    def update_config(
        self,
        policy_id: UUID,
        config: Mapping[str, Any],
        updated_by: UUID | None = None,
    ) -> PolicyRecord:
        """
        Apply an owner edit.

        The new configuration must validate.  ``order_count`` may grow or
        shrink, but never below the orders already completed; reaching
        exactly that count completes the policy.  An invalid policy becomes
        active and immediately due.
        """
        payload = parse_config(
            config, supported_chains=self._supported_chains, policy_id=str(policy_id)
        )
        actor = updated_by or self._actor_id

        with self._scope() as session:
            policy = self._load(session, policy_id)
            progress = session.execute(
                select(PolicyProgressModel)
                .where(PolicyProgressModel.policy_id == policy_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

            new_count = payload.terms.order_count
            if new_count < progress.completed_count:
                raise OutOfRangeError(
                    "order_count",
                    f"{progress.completed_count} orders already executed, "
                    f"cannot reduce to {new_count}",
                    str(policy_id),
                )
            if new_count != progress.order_count:
                progress.order_count = new_count
                progress.is_terminal = progress.completed_count == new_count
                progress.version += 1
                progress.updated_by_id = actor

            was_invalid = policy.status == PolicyStatus.INVALID.value
            policy.config = dict(config)
            policy.kind = payload.kind.value
            policy.config_version += 1
            policy.updated_by_id = actor
            if payload.terms.schedule.start_at is not None:
                policy.schedule_anchor = payload.terms.schedule.start_at
            if progress.is_terminal:
                policy.status = PolicyStatus.COMPLETED.value
                policy.next_run_at = None
            elif policy.status != PolicyStatus.ACTIVE.value:
                policy.status = PolicyStatus.ACTIVE.value
                policy.invalid_code = None
                policy.invalid_reason = None
                policy.next_run_at = self._clock.now()
            session.flush()
            record = policy.to_record()

        logger.info(
            "policy_config_updated",
            extra={
                "policy_id": str(policy_id),
                "config_version": record.envelope.config_version,
                "reactivated": was_invalid and record.status is PolicyStatus.ACTIVE,
            },
        )
        return record

    def record_execution(
        self,
        policy_id: UUID,
        next_run_at: datetime | None,
        executed_at: datetime | None = None,
    ) -> None:
        """Store the run time of an executed order and the next due time."""
        with self._scope() as session:
            policy = self._load(session, policy_id)
            policy.last_run_at = executed_at or self._clock.now()
            policy.next_run_at = next_run_at
            policy.updated_by_id = self._actor_id

    def mark_completed(self, policy_id: UUID) -> None:
        with self._scope() as session:
            policy = self._load(session, policy_id)
            policy.status = PolicyStatus.COMPLETED.value
            policy.next_run_at = None
            policy.updated_by_id = self._actor_id
        logger.info("policy_completed", extra={"policy_id": str(policy_id)})

    def mark_invalid(self, policy_id: UUID, code: str, reason: str) -> None:
        """Stop scheduling the policy until its owner edits it."""
        with self._scope() as session:
            policy = self._load(session, policy_id)
            policy.status = PolicyStatus.INVALID.value
            policy.invalid_code = code
            policy.invalid_reason = reason
            policy.updated_by_id = self._actor_id
        logger.warning(
            "policy_marked_invalid",
            extra={"policy_id": str(policy_id), "reason_code": code, "reason": reason},
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, policy_id: UUID) -> PolicyEnvelope:
        return self.get_record(policy_id).envelope

    def get_record(self, policy_id: UUID) -> PolicyRecord:
        with self._scope() as session:
            return self._load(session, policy_id).to_record()

    def list_due(self, now: datetime) -> list[PolicyEnvelope]:
        return [record.envelope for record in self.list_due_records(now)]

    def list_due_records(self, now: datetime) -> list[PolicyRecord]:
        """Active policies whose next run is at or before ``now``, oldest first."""
        with self._scope() as session:
            rows = session.execute(
                select(PolicyModel)
                .where(PolicyModel.status == PolicyStatus.ACTIVE.value)
                .where(PolicyModel.next_run_at.is_not(None))
                .where(PolicyModel.next_run_at <= now)
                .order_by(PolicyModel.next_run_at, PolicyModel.id)
            ).scalars().all()
            return [row.to_record() for row in rows]

    @staticmethod
    def _load(session: Session, policy_id: UUID) -> PolicyModel:
        policy = session.get(PolicyModel, policy_id)
        if policy is None:
            raise PolicyNotFoundError(str(policy_id))
        return policy
