"""Batch services: the engine's DI container and the polling scheduler."""

from recurring_batch.services.orchestrator import EngineOrchestrator, build_engine_orchestrator
from recurring_batch.services.scheduler import RecurringScheduler, TickResult

__all__ = [
    "EngineOrchestrator",
    "build_engine_orchestrator",
    "RecurringScheduler",
    "TickResult",
]
