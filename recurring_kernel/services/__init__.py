"""Services for the recurring kernel (stores, proposal, completion, cycles)."""

from recurring_kernel.services.chain_reader import ChainReader
from recurring_kernel.services.completion_handler import CompletionHandler, CompletionResult
from recurring_kernel.services.cycle_runner import PolicyCycleRunner
from recurring_kernel.services.policy_lock import PolicyLockManager, SqlLeaseStore
from recurring_kernel.services.policy_store import SqlPolicyStore
from recurring_kernel.services.progress_store import SqlProgressStore
from recurring_kernel.services.proposal_validator import ProposalValidator
from recurring_kernel.services.proposer import TransactionProposer
from recurring_kernel.services.transaction_recorder import (
    TransactionRecorder,
    TransactionRecordInfo,
)

__all__ = [
    "ChainReader",
    "CompletionHandler",
    "CompletionResult",
    "PolicyCycleRunner",
    "PolicyLockManager",
    "ProposalValidator",
    "SqlLeaseStore",
    "SqlPolicyStore",
    "SqlProgressStore",
    "TransactionProposer",
    "TransactionRecordInfo",
    "TransactionRecorder",
]
