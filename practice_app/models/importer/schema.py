"""
SQLAlchemy models for the CRM migration engine.

``MigrationRun`` is the single source of truth for a run's status, counters
and checkpoint. Only the orchestrator mutates it; page processing reports
back through the orchestrator rather than touching the row directly.
"""

from __future__ import annotations

import enum
from datetime import datetime
from types import MappingProxyType
from typing import Mapping

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class ImportPhase(str, enum.Enum):
    """Entity phases, declared in their fixed dependency order."""

    USERS = "users"
    CONTACTS = "contacts"
    PROSPECTS = "prospects"
    NOTES = "notes"
    ACTIVITIES = "activities"


DEFAULT_PAGE_SIZE = 100

# Timeline entries are heavy; every other phase shares the default page size.
PAGE_SIZES: Mapping[ImportPhase, int] = MappingProxyType(
    {
        ImportPhase.USERS: DEFAULT_PAGE_SIZE,
        ImportPhase.CONTACTS: DEFAULT_PAGE_SIZE,
        ImportPhase.PROSPECTS: DEFAULT_PAGE_SIZE,
        ImportPhase.NOTES: DEFAULT_PAGE_SIZE,
        ImportPhase.ACTIVITIES: 25,
    }
)


class RunType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RunStatus(str, enum.Enum):
    """Lifecycle states for a migration run."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RUN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})
TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class IntegrationStatus(str, enum.Enum):
    CONFIGURED = "configured"
    CONNECTED = "connected"
    ERROR = "error"


class MigrationErrorType(str, enum.Enum):
    TRANSFORM = "transform"
    VALIDATION = "validation"
    IDENTITY = "identity"
    INSERT = "insert"
    API = "api"
    QUEUE = "queue"


class DuplicateType(str, enum.Enum):
    EMAIL_EXACT = "email_exact"
    EMAIL_NORMALIZED = "email_normalized"


class DuplicateResolution(str, enum.Enum):
    LINKED = "linked"
    CREATED_NEW = "created_new"
    SKIPPED = "skipped"
    PENDING = "pending"


class Integration(BaseModel):
    """A configured connection to the external CRM."""

    __tablename__ = "integrations"

    id: Mapped[int] = mapped_column(primary_key=True)
    provider: Mapped[str] = mapped_column(db.String(50), nullable=False, default="LAWMATICS")
    name: Mapped[str] = mapped_column(db.String(200), nullable=False)
    credentials_key: Mapped[str | None] = mapped_column(
        db.String(255),
        nullable=True,
        comment="Lookup key into the external credential store; never the secret itself.",
    )
    status: Mapped[IntegrationStatus] = mapped_column(
        Enum(IntegrationStatus, name="integration_status_enum"),
        nullable=False,
        default=IntegrationStatus.CONFIGURED,
    )
    settings: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    last_sync_timestamps: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Phase name to ISO timestamp of the last successful sync of that phase.",
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    runs = relationship("MigrationRun", back_populates="integration", passive_deletes=True)


class MigrationRun(BaseModel):
    """One execution of the migration state machine for an integration."""

    __tablename__ = "migration_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    integration_id: Mapped[int] = mapped_column(ForeignKey("integrations.id"), nullable=False, index=True)
    run_type: Mapped[RunType] = mapped_column(
        Enum(RunType, name="migration_run_type_enum"),
        nullable=False,
        default=RunType.FULL,
    )
    entity_types: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="migration_run_status_enum"),
        nullable=False,
        default=RunStatus.PENDING,
        index=True,
    )
    total_entities: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    processed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    integration = relationship("Integration", back_populates="runs")
    errors = relationship(
        "MigrationError",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_migration_runs_integration_status", "integration_id", "status"),)

    @property
    def requested_phases(self) -> tuple[ImportPhase, ...]:
        return tuple(ImportPhase(value) for value in (self.entity_types or ()))

    def counters(self) -> dict[str, int]:
        return {
            "processed": self.processed_count,
            "created": self.created_count,
            "updated": self.updated_count,
            "skipped": self.skipped_count,
            "errored": self.error_count,
        }


class MigrationError(BaseModel):
    """A record-level or page-level failure captured during a run."""

    __tablename__ = "migration_errors"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("migration_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    error_type: Mapped[MigrationErrorType] = mapped_column(
        Enum(MigrationErrorType, name="migration_error_type_enum"),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    retried_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    run = relationship("MigrationRun", back_populates="errors")

    __table_args__ = (Index("idx_migration_errors_lookup", "run_id", "entity_type", "external_id"),)

    def mark_retried(self) -> None:
        self.retry_count = (self.retry_count or 0) + 1
        self.retried_at = utcnow()

    def mark_resolved(self) -> None:
        self.resolved = True
        self.resolved_at = utcnow()

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "external_id": self.external_id,
            "error_type": self.error_type.value,
            "message": self.message,
            "details": self.details,
            "retry_count": self.retry_count,
            "resolved": self.resolved,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ImportDuplicate(BaseModel):
    """Audit of an incoming record that was linked to an existing internal record."""

    __tablename__ = "import_duplicates"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int | None] = mapped_column(ForeignKey("migration_runs.id", ondelete="SET NULL"), nullable=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    source_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    duplicate_type: Mapped[DuplicateType] = mapped_column(
        Enum(DuplicateType, name="duplicate_type_enum"),
        nullable=False,
    )
    matching_field: Mapped[str] = mapped_column(db.String(50), nullable=False, default="email")
    matching_value: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    confidence: Mapped[int] = mapped_column(db.Integer, nullable=False)
    existing_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    resolution: Mapped[DuplicateResolution] = mapped_column(
        Enum(DuplicateResolution, name="duplicate_resolution_enum"),
        nullable=False,
        default=DuplicateResolution.PENDING,
    )
    resolved_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    __table_args__ = (Index("idx_import_duplicates_key", "source", "entity_type", "external_id"),)
