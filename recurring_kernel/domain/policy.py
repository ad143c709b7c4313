"""
Policy model and validator.

Responsibility:
    Parses the opaque, versioned configuration blob of a recurring-order
    policy into a typed, validated payload.  The blob carries a ``kind``
    discriminant; each kind has its own payload dataclass sharing a common
    ``PolicyTerms`` core (chain, vault, source asset, budget, order count,
    schedule).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Deterministic on
    identical input; the set of supported chains is passed in by the caller
    rather than read from configuration here.

Invariants enforced:
    - order_count >= 1 and total_amount > 0 (integers, smallest unit).
    - Schedule unit in {minute, hour, day, week, month}, interval >= 1.
    - Price bounds, when present, are positive and min <= max.
    - chain_id is non-empty and, when a supported set is given, known.

Failure modes:
    - MissingFieldError, OutOfRangeError, MalformedNumberError,
      InvalidScheduleError -- all PolicyValidationError subclasses; the
      first violation found is raised.
"""

from __future__ import annotations

import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union
from uuid import UUID

from recurring_kernel.exceptions import (
    InvalidScheduleError,
    MalformedNumberError,
    MissingFieldError,
    OutOfRangeError,
)

NATIVE_ASSET = "native"
SUPPORTED_CONFIG_VERSIONS = frozenset({1})

_INTEGER_RE = re.compile(r"^[+-]?\d+$")


class PolicyKind(str, Enum):
    """Discriminant selecting the validated payload type."""

    SWAP = "swap"  # Recurring purchase: source asset -> destination asset
    SEND = "send"  # Recurring payment: source asset -> fixed recipient


class ScheduleUnit(str, Enum):
    """Enumerated schedule frequencies."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class Schedule:
    """Every ``interval`` ``unit``s, first run at ``start_at`` (or creation)."""

    interval: int
    unit: ScheduleUnit
    start_at: datetime | None = None


@dataclass(frozen=True)
class PriceBounds:
    """Inclusive band for the source->destination rate."""

    min_price: Decimal
    max_price: Decimal

    def contains(self, rate: Decimal) -> bool:
        return self.min_price <= rate <= self.max_price


@dataclass(frozen=True)
class PolicyTerms:
    """Fields common to every policy kind."""

    chain_id: str
    vault_address: str
    source_asset: str
    total_amount: int
    order_count: int
    schedule: Schedule

    @property
    def source_is_native(self) -> bool:
        return self.source_asset == NATIVE_ASSET


@dataclass(frozen=True)
class SwapPolicy:
    """Recurring swap of a fixed budget into ``destination_asset``."""

    terms: PolicyTerms
    destination_asset: str
    price_bounds: PriceBounds | None = None

    kind = PolicyKind.SWAP


@dataclass(frozen=True)
class SendPolicy:
    """Recurring transfer of a fixed budget to ``recipient``."""

    terms: PolicyTerms
    recipient: str

    kind = PolicyKind.SEND


PolicyPayload = Union[SwapPolicy, SendPolicy]


@dataclass(frozen=True)
class PolicyEnvelope:
    """Common envelope: identity, owning vault and the raw configuration."""

    policy_id: UUID
    vault_id: str
    config: Mapping[str, Any]
    config_version: int = 1


class PolicyStatus(str, Enum):
    """
    Lifecycle of a stored policy.

    State machine:
        ACTIVE -> INVALID | COMPLETED
        INVALID -> ACTIVE (owner edits the configuration)
        COMPLETED: terminal
    """

    ACTIVE = "active"
    INVALID = "invalid"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PolicyRecord:
    """Envelope plus the scheduling state the store keeps beside it."""

    envelope: PolicyEnvelope
    status: PolicyStatus
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    anchor_at: datetime | None = None
    invalid_code: str | None = None
    invalid_reason: str | None = None

    @property
    def policy_id(self) -> UUID:
        return self.envelope.policy_id

    def is_due(self, as_of: datetime) -> bool:
        """Only an ACTIVE policy with a ``next_run_at`` at or before ``as_of`` is due."""
        if self.status is not PolicyStatus.ACTIVE or self.next_run_at is None:
            return False
        return as_of >= self.next_run_at


@dataclass(frozen=True)
class ValidatedPolicy:
    """Envelope plus its typed payload."""

    envelope: PolicyEnvelope
    payload: PolicyPayload

    @property
    def policy_id(self) -> UUID:
        return self.envelope.policy_id

    @property
    def vault_id(self) -> str:
        return self.envelope.vault_id

    @property
    def kind(self) -> PolicyKind:
        return self.payload.kind

    @property
    def terms(self) -> PolicyTerms:
        return self.payload.terms


# =============================================================================
# Field parsers
# =============================================================================


def _require(raw: Mapping[str, Any], field: str, policy_id: str | None) -> Any:
    value = raw.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingFieldError(field, policy_id)
    return value


def _require_text(raw: Mapping[str, Any], field: str, policy_id: str | None) -> str:
    value = _require(raw, field, policy_id)
    if not isinstance(value, str):
        raise OutOfRangeError(field, f"expected a string, got {type(value).__name__}", policy_id)
    return value.strip()


def _parse_int(value: Any, field: str, policy_id: str | None) -> int:
    # bool is an int subclass; a boolean budget is a type error, not 1
    if isinstance(value, bool):
        raise MalformedNumberError(field, value, policy_id)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INTEGER_RE.match(value.strip()):
        return int(value.strip())
    raise MalformedNumberError(field, value, policy_id)


def _positive_int(raw: Mapping[str, Any], field: str, policy_id: str | None) -> int:
    value = _parse_int(_require(raw, field, policy_id), field, policy_id)
    if value <= 0:
        raise OutOfRangeError(field, f"must be a positive integer, got {value}", policy_id)
    return value


def _positive_decimal(value: Any, field: str, policy_id: str | None) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise MalformedNumberError(field, value, policy_id)
    try:
        number = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise MalformedNumberError(field, value, policy_id) from None
    if not number.is_finite():
        raise MalformedNumberError(field, value, policy_id)
    if number <= 0:
        raise OutOfRangeError(field, f"must be positive, got {number}", policy_id)
    return number


def parse_schedule(raw: Any, policy_id: str | None = None) -> Schedule:
    """Parse the ``schedule`` block."""
    if raw is None:
        raise MissingFieldError("schedule", policy_id)
    if not isinstance(raw, Mapping):
        raise InvalidScheduleError("schedule", "must be a mapping", policy_id)

    unit_raw = raw.get("unit")
    if not isinstance(unit_raw, str) or not unit_raw.strip():
        raise InvalidScheduleError("schedule.unit", f"unknown unit {unit_raw!r}", policy_id)
    unit_key = unit_raw.strip().lower()
    if unit_key.endswith("s"):
        unit_key = unit_key[:-1]
    try:
        unit = ScheduleUnit(unit_key)
    except ValueError:
        raise InvalidScheduleError(
            "schedule.unit",
            f"unit must be one of {[u.value for u in ScheduleUnit]}, got {unit_raw!r}",
            policy_id,
        ) from None

    interval_raw = raw.get("interval", 1)
    if isinstance(interval_raw, bool) or not (
        isinstance(interval_raw, int)
        or (isinstance(interval_raw, str) and _INTEGER_RE.match(interval_raw.strip()))
    ):
        raise InvalidScheduleError(
            "schedule.interval", f"interval must be an integer, got {interval_raw!r}", policy_id
        )
    interval = int(interval_raw)
    if interval <= 0:
        raise InvalidScheduleError(
            "schedule.interval", f"interval must be positive, got {interval}", policy_id
        )

    start_at = None
    start_raw = raw.get("start_at")
    if start_raw is not None:
        if isinstance(start_raw, datetime):
            start_at = start_raw
        else:
            try:
                start_at = datetime.fromisoformat(str(start_raw).replace("Z", "+00:00"))
            except ValueError:
                raise InvalidScheduleError(
                    "schedule.start_at", f"not an ISO-8601 timestamp: {start_raw!r}", policy_id
                ) from None
        if start_at.tzinfo is None:
            start_at = start_at.replace(tzinfo=timezone.utc)
        start_at = start_at.astimezone(timezone.utc)

    return Schedule(interval=interval, unit=unit, start_at=start_at)


def parse_price_bounds(raw: Any, policy_id: str | None = None) -> PriceBounds | None:
    """Parse the optional ``price_bounds`` block."""
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise OutOfRangeError("price_bounds", "must be a mapping with min and max", policy_id)
    if raw.get("min") is None:
        raise MissingFieldError("price_bounds.min", policy_id)
    if raw.get("max") is None:
        raise MissingFieldError("price_bounds.max", policy_id)
    low = _positive_decimal(raw["min"], "price_bounds.min", policy_id)
    high = _positive_decimal(raw["max"], "price_bounds.max", policy_id)
    if low > high:
        raise OutOfRangeError(
            "price_bounds", f"min {low} is greater than max {high}", policy_id
        )
    return PriceBounds(min_price=low, max_price=high)


# =============================================================================
# Validator
# =============================================================================


def parse_config(
    raw: Mapping[str, Any],
    supported_chains: Collection[str] | None = None,
    policy_id: str | None = None,
) -> PolicyPayload:
    """
    Validate a raw configuration blob and return its typed payload.

    Preconditions:
        ``raw`` is the configuration mapping as stored by the policy owner.

    Postconditions:
        Returns a SwapPolicy or SendPolicy satisfying every invariant in
        the module docstring.

    Raises:
        PolicyValidationError subclass for the first violation found.
    """
    if not isinstance(raw, Mapping):
        raise OutOfRangeError("config", "configuration must be a mapping", policy_id)

    kind_raw = _require_text(raw, "kind", policy_id)
    try:
        kind = PolicyKind(kind_raw.lower())
    except ValueError:
        raise OutOfRangeError(
            "kind", f"must be one of {[k.value for k in PolicyKind]}, got {kind_raw!r}", policy_id
        ) from None

    version = raw.get("version", 1)
    if (
        isinstance(version, bool)
        or not isinstance(version, int)
        or version not in SUPPORTED_CONFIG_VERSIONS
    ):
        raise OutOfRangeError("version", f"unsupported configuration version {version!r}", policy_id)

    chain_id = _require_text(raw, "chain_id", policy_id)
    if supported_chains is not None and chain_id not in supported_chains:
        raise OutOfRangeError("chain_id", f"unrecognized chain {chain_id!r}", policy_id)

    terms = PolicyTerms(
        chain_id=chain_id,
        vault_address=_require_text(raw, "vault_address", policy_id),
        source_asset=_require_text(raw, "source_asset", policy_id),
        total_amount=_positive_int(raw, "total_amount", policy_id),
        order_count=_positive_int(raw, "order_count", policy_id),
        schedule=parse_schedule(raw.get("schedule"), policy_id),
    )

    if kind is PolicyKind.SWAP:
        destination = _require_text(raw, "destination_asset", policy_id)
        if destination == terms.source_asset:
            raise OutOfRangeError(
                "destination_asset", "must differ from source_asset", policy_id
            )
        return SwapPolicy(
            terms=terms,
            destination_asset=destination,
            price_bounds=parse_price_bounds(raw.get("price_bounds"), policy_id),
        )

    if raw.get("price_bounds") is not None:
        raise OutOfRangeError("price_bounds", "not supported for send policies", policy_id)
    return SendPolicy(terms=terms, recipient=_require_text(raw, "recipient", policy_id))


def validate_policy(
    envelope: PolicyEnvelope,
    supported_chains: Collection[str] | None = None,
) -> ValidatedPolicy:
    """Validate an envelope's configuration; see ``parse_config``."""
    payload = parse_config(
        envelope.config,
        supported_chains=supported_chains,
        policy_id=str(envelope.policy_id),
    )
    return ValidatedPolicy(envelope=envelope, payload=payload)
