"""ORM models for the recurring kernel."""

from recurring_kernel.domain.policy import PolicyStatus
from recurring_kernel.models.lease import PolicyLeaseModel
from recurring_kernel.models.policy import PolicyModel
from recurring_kernel.models.progress import PolicyProgressModel
from recurring_kernel.models.transaction_record import RecordStatus, TransactionRecordModel

__all__ = [
    "PolicyLeaseModel",
    "PolicyModel",
    "PolicyProgressModel",
    "PolicyStatus",
    "RecordStatus",
    "TransactionRecordModel",
]
