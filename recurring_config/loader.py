"""
Settings loader (``recurring_config.loader``).

Responsibility
--------------
Reads a YAML settings file and parses it into ``EngineSettings``.  This is
internal tooling; runtime callers use ``recurring_config.get_active_settings()``.

Invariants enforced
-------------------
* Unknown top-level keys are rejected (a typo never silently falls back
  to a default).
* Numeric settings are range-checked; violations raise ``ValueError``.
* ``compute_checksum`` is deterministic for identical settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from recurring_config.schema import ChainSettings, EngineSettings
from recurring_kernel.domain.allowance import ApprovalMode

_SCALAR_FIELDS = {
    f.name for f in fields(EngineSettings) if f.name not in ("chains", "checksum")
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")
    return data


def parse_chains(data: Any) -> tuple[ChainSettings, ...]:
    """Parse the ``chains`` mapping: chain id -> {router_address, native_asset}."""
    if data is None:
        return ()
    if not isinstance(data, dict):
        raise ValueError("'chains' must be a mapping of chain id to chain settings")

    chains = []
    for chain_id, body in sorted(data.items(), key=lambda item: str(item[0])):
        body = body or {}
        router = body.get("router_address")
        if not router:
            raise ValueError(f"Chain {chain_id!r} has no router_address")
        chains.append(
            ChainSettings(
                chain_id=str(chain_id),
                router_address=str(router),
                native_asset=str(body.get("native_asset", "native")),
            )
        )
    return tuple(chains)


def _positive(name: str, value: Any, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {value}")


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse a settings mapping into ``EngineSettings``.

    Raises:
        ValueError: on unknown keys or out-of-range values.
    """
    unknown = set(data) - _SCALAR_FIELDS - {"chains"}
    if unknown:
        raise ValueError(f"Unknown settings: {sorted(unknown)}")

    values: dict[str, Any] = {k: v for k, v in data.items() if k in _SCALAR_FIELDS}
    if "approval_mode" in values:
        try:
            values["approval_mode"] = ApprovalMode(values["approval_mode"])
        except ValueError:
            raise ValueError(
                f"approval_mode must be one of {[m.value for m in ApprovalMode]}, "
                f"got {values['approval_mode']!r}"
            ) from None

    settings = EngineSettings(chains=parse_chains(data.get("chains")), **values)

    if not isinstance(settings.slippage_bps, int) or not 0 <= settings.slippage_bps < 10_000:
        raise ValueError(f"slippage_bps must be an integer in [0, 10000), got {settings.slippage_bps!r}")
    _positive("deadline_seconds", settings.deadline_seconds)
    _positive("confirmation_timeout_seconds", settings.confirmation_timeout_seconds, allow_zero=True)
    _positive("poll_interval_seconds", settings.poll_interval_seconds)
    _positive("lease_ttl_seconds", settings.lease_ttl_seconds)
    _positive("tick_interval_seconds", settings.tick_interval_seconds)
    _positive("max_workers", settings.max_workers)
    if not settings.database_url:
        raise ValueError("database_url is required")
    if str(settings.log_level).upper() not in logging.getLevelNamesMapping():
        raise ValueError(f"log_level must be a logging level name, got {settings.log_level!r}")

    return settings


def settings_to_dict(settings: EngineSettings) -> dict[str, Any]:
    """Canonical mapping of the settings (checksum input)."""
    data = {name: getattr(settings, name) for name in sorted(_SCALAR_FIELDS)}
    data["approval_mode"] = settings.approval_mode.value
    data["chains"] = {
        chain.chain_id: {
            "router_address": chain.router_address,
            "native_asset": chain.native_asset,
        }
        for chain in settings.chains
    }
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
