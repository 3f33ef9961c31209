# practice_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .imported import (
    SOURCE_LAWMATICS,
    ImportedEntity,
    ImportedRecordMixin,
    ImportFlag,
    ImportMetadata,
    InvalidImportMetadata,
    SourceOfTruth,
)
from .importer import (
    ACTIVE_RUN_STATUSES,
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
from .practice import Activity, Matter, MatterStatus, Note, NoteTarget, Person
from .user import ClientProfile, User, UserRole, UserStatus

__all__ = [
    "db",
    "BaseModel",
    "SOURCE_LAWMATICS",
    "ImportedEntity",
    "ImportedRecordMixin",
    "ImportFlag",
    "ImportMetadata",
    "InvalidImportMetadata",
    "SourceOfTruth",
    # Practice records
    "User",
    "UserRole",
    "UserStatus",
    "ClientProfile",
    "Person",
    "Matter",
    "MatterStatus",
    "Note",
    "NoteTarget",
    "Activity",
    # Migration engine
    "ACTIVE_RUN_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "Integration",
    "IntegrationStatus",
    "MigrationRun",
    "MigrationError",
    "MigrationErrorType",
    "ImportDuplicate",
    "DuplicateType",
    "DuplicateResolution",
    "ImportPhase",
    "RunStatus",
    "RunType",
]
