"""Migration pipeline: state machine, page processing and persistence helpers."""

from __future__ import annotations

from .caches import CacheRegistry, LookupCaches
from .orchestrator import MigrationOrchestrator, StepReport
from .processing import PageProcessor
from .run_service import MigrationRunService, RunSummary
from .upsert import BatchResult, RecordError, UpsertEngine

__all__ = [
    "BatchResult",
    "CacheRegistry",
    "LookupCaches",
    "MigrationOrchestrator",
    "MigrationRunService",
    "PageProcessor",
    "RecordError",
    "RunSummary",
    "StepReport",
    "UpsertEngine",
]
