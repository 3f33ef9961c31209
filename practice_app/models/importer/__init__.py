"""Migration engine tables."""

from .schema import (
    ACTIVE_RUN_STATUSES,
    DEFAULT_PAGE_SIZE,
    PAGE_SIZES,
    TERMINAL_RUN_STATUSES,
    DuplicateResolution,
    DuplicateType,
    ImportDuplicate,
    ImportPhase,
    Integration,
    IntegrationStatus,
    MigrationError,
    MigrationErrorType,
    MigrationRun,
    RunStatus,
    RunType,
)

__all__ = [
    "ACTIVE_RUN_STATUSES",
    "DEFAULT_PAGE_SIZE",
    "PAGE_SIZES",
    "TERMINAL_RUN_STATUSES",
    "DuplicateResolution",
    "DuplicateType",
    "ImportDuplicate",
    "ImportPhase",
    "Integration",
    "IntegrationStatus",
    "MigrationError",
    "MigrationErrorType",
    "MigrationRun",
    "RunStatus",
    "RunType",
]
