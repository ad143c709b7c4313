"""
TransactionRecorder -- audit trail of broadcast attempts.

Responsibility:
    Writes a ``pending`` record before a signed transaction is handed to
    the broadcaster, attaches the returned hash, and resolves the record to
    ``confirmed`` or ``failed``.  Serves the unresolved attempts that
    reconciliation re-checks before an order is proposed again.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by CompletionHandler and PolicyCycleRunner.

Invariants enforced:
    - A record exists before its transaction leaves the engine.
    - Status moves pending -> confirmed | failed, or failed -> confirmed.
    - Records are never deleted (db/immutability.py).

Failure modes:
    - InvalidRecordTransitionError: forbidden status change requested.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select

from recurring_kernel.domain.clock import as_utc
from recurring_kernel.domain.transactions import TransactionBatch
from recurring_kernel.exceptions import ConfirmationTimeoutError, InvalidRecordTransitionError
from recurring_kernel.logging_config import get_logger
from recurring_kernel.models.transaction_record import RecordStatus, TransactionRecordModel
from recurring_kernel.services.base import BaseStore

logger = get_logger("services.recorder")


@dataclass(frozen=True)
class TransactionRecordInfo:
    """Read-only view of one transaction record."""

    record_id: UUID
    policy_id: UUID
    order_index: int
    position: int
    is_final: bool
    tx_kind: str
    chain_id: str
    digest: str
    nonce: int
    amount: int
    status: RecordStatus
    tx_hash: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    broadcast_at: datetime | None = None
    resolved_at: datetime | None = None

    @classmethod
    def from_model(cls, row: TransactionRecordModel) -> "TransactionRecordInfo":
        return cls(
            record_id=row.id,
            policy_id=row.policy_id,
            order_index=row.order_index,
            position=row.position,
            is_final=row.is_final,
            tx_kind=row.tx_kind,
            chain_id=row.chain_id,
            digest=row.digest,
            nonce=row.nonce,
            amount=row.amount,
            status=RecordStatus(row.status),
            tx_hash=row.tx_hash,
            error_code=row.error_code,
            error_message=row.error_message,
            broadcast_at=as_utc(row.broadcast_at),
            resolved_at=as_utc(row.resolved_at),
        )


class TransactionRecorder(BaseStore):
    """Writes and resolves ``transaction_records`` rows."""

    def open(
        self,
        batch: TransactionBatch,
        position: int,
        details: dict[str, Any] | None = None,
    ) -> UUID:
        """Insert the pending record for ``batch.transactions[position]``."""
        descriptor = batch.transactions[position]
        with self._scope() as session:
            row = TransactionRecordModel(
                policy_id=batch.policy_id,
                order_index=batch.order_index,
                position=position,
                is_final=position == len(batch) - 1,
                tx_kind=descriptor.kind.value,
                chain_id=descriptor.chain_id,
                digest=batch.digests[position],
                nonce=descriptor.nonce,
                amount=batch.amount,
                status=RecordStatus.PENDING.value,
                details=details,
                created_by_id=self._actor_id,
            )
            session.add(row)
            session.flush()
            record_id = row.id
        logger.debug(
            "transaction_record_opened",
            extra={"record_id": str(record_id), "position": position, "nonce": descriptor.nonce},
        )
        return record_id

    def mark_broadcast(self, record_id: UUID, tx_hash: str) -> None:
        with self._scope() as session:
            row = self._load(session, record_id)
            row.tx_hash = tx_hash
            row.broadcast_at = self._clock.now()
            row.updated_by_id = self._actor_id

    def mark_confirmed(self, record_id: UUID) -> TransactionRecordInfo:
        return self._resolve(record_id, RecordStatus.CONFIRMED)

    def mark_failed(
        self,
        record_id: UUID,
        error_code: str,
        error_message: str,
    ) -> TransactionRecordInfo:
        return self._resolve(record_id, RecordStatus.FAILED, error_code, error_message)

    def unresolved_final_attempts(
        self,
        policy_id: UUID,
        order_index: int,
    ) -> list[TransactionRecordInfo]:
        """
        Final-position attempts for an order whose outcome may still land.

        That is every broadcast final transaction that is pending, failed by
        confirmation timeout, or confirmed (a confirmation recorded by a
        cycle that ended before advancing progress).  Oldest first.
        """
        with self._scope() as session:
            rows = session.execute(
                select(TransactionRecordModel)
                .where(TransactionRecordModel.policy_id == policy_id)
                .where(TransactionRecordModel.order_index == order_index)
                .where(TransactionRecordModel.is_final.is_(True))
                .where(TransactionRecordModel.tx_hash.is_not(None))
                .where(
                    or_(
                        TransactionRecordModel.status.in_(
                            [RecordStatus.PENDING.value, RecordStatus.CONFIRMED.value]
                        ),
                        and_(
                            TransactionRecordModel.status == RecordStatus.FAILED.value,
                            TransactionRecordModel.error_code == ConfirmationTimeoutError.code,
                        ),
                    )
                )
                .order_by(TransactionRecordModel.created_at, TransactionRecordModel.nonce)
            ).scalars().all()
            return [TransactionRecordInfo.from_model(row) for row in rows]

    def list_for_policy(self, policy_id: UUID) -> list[TransactionRecordInfo]:
        with self._scope() as session:
            rows = session.execute(
                select(TransactionRecordModel)
                .where(TransactionRecordModel.policy_id == policy_id)
                .order_by(
                    TransactionRecordModel.order_index,
                    TransactionRecordModel.created_at,
                    TransactionRecordModel.position,
                )
            ).scalars().all()
            return [TransactionRecordInfo.from_model(row) for row in rows]

    def _resolve(
        self,
        record_id: UUID,
        status: RecordStatus,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> TransactionRecordInfo:
        with self._scope() as session:
            row = self._load(session, record_id)
            current = RecordStatus(row.status)
            allowed = (
                current is RecordStatus.PENDING
                or (current is RecordStatus.FAILED and status is not RecordStatus.PENDING)
            )
            if not allowed:
                raise InvalidRecordTransitionError(str(record_id), current.value, status.value)
            row.status = status.value
            row.resolved_at = self._clock.now()
            row.updated_by_id = self._actor_id
            if status is RecordStatus.CONFIRMED:
                row.error_code = None
                row.error_message = None
            else:
                row.error_code = error_code
                row.error_message = error_message
            session.flush()
            info = TransactionRecordInfo.from_model(row)

        logger.info(
            "transaction_record_resolved",
            extra={
                "record_id": str(record_id),
                "from_status": current.value,
                "to_status": status.value,
                "error_code": error_code,
            },
        )
        return info

    @staticmethod
    def _load(session, record_id: UUID) -> TransactionRecordModel:
        row = session.get(TransactionRecordModel, record_id)
        if row is None:
            raise LookupError(f"Transaction record not found: {record_id}")
        return row
