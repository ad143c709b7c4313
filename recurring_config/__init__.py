"""
recurring_config -- single public entrypoint for engine settings.

Responsibility:
    Provides the ONLY way to obtain engine settings at runtime through
    ``get_active_settings()``.  No other component reads settings files.
    The kernel never imports from this package; the orchestrator passes
    the individual values into kernel services.

Failure modes:
    - ``FileNotFoundError`` -- settings file not found.
    - ``ValueError`` -- unknown keys or out-of-range values.

Audit relevance:
    Every successful ``get_active_settings()`` call emits an
    ``engine_settings_loaded`` log entry with the settings checksum, so
    each cycle can be tied to the exact configuration that governed it.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

from recurring_config.loader import (
    compute_checksum,
    load_yaml_file,
    parse_settings,
    settings_to_dict,
)
from recurring_config.schema import ChainSettings, EngineSettings
from recurring_kernel.logging_config import get_logger

_logger = get_logger("config")

# Default settings set shipped with the package
_DEFAULT_SETTINGS_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_settings(
    path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
) -> EngineSettings:
    """The ONLY public settings entrypoint.

    Args:
        path: Settings YAML file.  Defaults to recurring_config/sets/default.yaml.
        overrides: Top-level keys replacing those from the file (tests and
            command-line flags).

    Returns:
        Frozen ``EngineSettings`` carrying the checksum of its content.
    """
    settings_path = Path(path) if path is not None else _DEFAULT_SETTINGS_FILE
    data = load_yaml_file(settings_path)
    if overrides:
        data = {**data, **overrides}

    settings = parse_settings(data)
    settings = replace(settings, checksum=compute_checksum(settings_to_dict(settings)))

    _logger.info(
        "engine_settings_loaded",
        extra={
            "settings_path": str(settings_path),
            "checksum": settings.checksum,
            "chain_count": len(settings.chains),
            "approval_mode": settings.approval_mode.value,
            "slippage_bps": settings.slippage_bps,
        },
    )
    return settings


__all__ = [
    "ChainSettings",
    "EngineSettings",
    "get_active_settings",
]
