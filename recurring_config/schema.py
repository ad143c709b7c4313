"""
Engine settings schema.

Frozen dataclasses the YAML settings file is parsed into.  Every value the
engine tunes at runtime (slippage, deadlines, confirmation polling, lease
TTL, worker count, supported chains) lives here and nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from recurring_kernel.domain.allowance import ApprovalMode
from recurring_kernel.domain.policy import NATIVE_ASSET

# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainSettings:
    """One chain the engine can execute on."""

    chain_id: str
    router_address: str
    native_asset: str = NATIVE_ASSET


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Complete runtime configuration of one engine process."""

    database_url: str = "sqlite:///recurring.db"
    slippage_bps: int = 100
    deadline_seconds: int = 1200
    confirmation_timeout_seconds: int = 300
    poll_interval_seconds: float = 5
    lease_ttl_seconds: int = 900
    tick_interval_seconds: float = 60
    max_workers: int = 4
    approval_mode: ApprovalMode = ApprovalMode.EXACT
    log_level: str = "INFO"
    # Lease holder name; host:pid when unset
    engine_id: str | None = None
    chains: tuple[ChainSettings, ...] = field(default_factory=tuple)
    checksum: str = ""

    @property
    def supported_chains(self) -> frozenset[str]:
        return frozenset(chain.chain_id for chain in self.chains)

    @property
    def routers(self) -> dict[str, str]:
        return {chain.chain_id: chain.router_address for chain in self.chains}

    def chain(self, chain_id: str) -> ChainSettings:
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        raise KeyError(f"Chain not configured: {chain_id}")
