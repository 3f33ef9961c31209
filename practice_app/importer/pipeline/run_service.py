"""
Run store: reading and writing migration runs, their checkpoints and errors.

The orchestrator is the only writer of run state. Methods here stage changes
on the session and leave the commit to the caller, so counters, checkpoint
and error rows for one page land in a single transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from practice_app.importer.metrics import record_run_transition
from practice_app.importer.pipeline.state_machine import Checkpoint, RunState, ordered_phases
from practice_app.importer.pipeline.upsert import BatchResult, RecordError
from practice_app.models import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    ImportPhase,
    MigrationError,
    MigrationErrorType,
    MigrationRun,
    RunStatus,
    RunType,
    db,
)
from practice_app.models.base import as_utc

DEFAULT_LIST_LIMIT = 25
MAX_LIST_LIMIT = 200
ERROR_BODY_LIMIT = 4000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_limit(value: int | str | None, fallback: int = DEFAULT_LIST_LIMIT) -> int:
    try:
        parsed = int(value) if value is not None else fallback
    except (TypeError, ValueError):
        return fallback
    return max(1, min(parsed, MAX_LIST_LIMIT))


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class RunSummary:
    """Operator-facing view of a migration run."""

    id: int
    integration_id: int
    run_type: str
    status: str
    phases: list[str]
    processed: int
    created: int
    updated: int
    skipped: int
    errored: int
    checkpoint: Mapping[str, Any] | None
    error_summary: str | None
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    unresolved_errors: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "run_type": self.run_type,
            "status": self.status,
            "phases": list(self.phases),
            "counters": {
                "processed": self.processed,
                "created": self.created,
                "updated": self.updated,
                "skipped": self.skipped,
                "errored": self.errored,
            },
            "checkpoint": dict(self.checkpoint) if self.checkpoint else None,
            "error_summary": self.error_summary,
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "unresolved_errors": self.unresolved_errors,
        }


class MigrationRunService:
    """Facade over ``MigrationRun`` / ``MigrationError`` persistence."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # Reads -----------------------------------------------------------------------

    def get_run(self, run_id: int) -> MigrationRun:
        run = self.session.get(MigrationRun, run_id)
        if run is None:
            raise NoResultFound(f"Migration run {run_id} not found.")
        return run

    def find_run(self, run_id: int) -> MigrationRun | None:
        return self.session.get(MigrationRun, run_id)

    def find_active_run(self, integration_id: int) -> MigrationRun | None:
        stmt = (
            select(MigrationRun)
            .where(
                MigrationRun.integration_id == integration_id,
                MigrationRun.status.in_(tuple(ACTIVE_RUN_STATUSES)),
            )
            .order_by(MigrationRun.id.desc())
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def list_runs(
        self,
        *,
        integration_id: int | None = None,
        statuses: Iterable[RunStatus | str] | None = None,
        limit: int | str | None = None,
    ) -> list[MigrationRun]:
        stmt = select(MigrationRun)
        if integration_id is not None:
            stmt = stmt.where(MigrationRun.integration_id == integration_id)
        resolved = [RunStatus(value) for value in (statuses or ()) if value]
        if resolved:
            stmt = stmt.where(MigrationRun.status.in_(resolved))
        stmt = stmt.order_by(MigrationRun.id.desc()).limit(_coerce_limit(limit))
        return list(self.session.scalars(stmt))

    def list_errors(
        self,
        run_id: int,
        *,
        phase: ImportPhase | str | None = None,
        error_type: MigrationErrorType | str | None = None,
        include_resolved: bool = False,
        limit: int | str | None = None,
    ) -> list[MigrationError]:
        stmt = select(MigrationError).where(MigrationError.run_id == run_id)
        if phase is not None:
            stmt = stmt.where(MigrationError.entity_type == ImportPhase(phase).value)
        if error_type is not None:
            stmt = stmt.where(MigrationError.error_type == MigrationErrorType(error_type))
        if not include_resolved:
            stmt = stmt.where(MigrationError.resolved.is_(False))
        stmt = stmt.order_by(MigrationError.id.asc()).limit(_coerce_limit(limit, fallback=MAX_LIST_LIMIT))
        return list(self.session.scalars(stmt))

    def run_state(self, run: MigrationRun) -> RunState:
        integration = run.integration
        return RunState(
            run_id=run.id,
            status=run.status,
            run_type=run.run_type,
            requested=ordered_phases(run.entity_types),
            checkpoint=Checkpoint.from_dict(run.checkpoint),
            sync_timestamps=dict((integration.last_sync_timestamps if integration else None) or {}),
        )

    def summarize(self, run: MigrationRun) -> RunSummary:
        duration = None
        if run.started_at and run.completed_at:
            duration = (as_utc(run.completed_at) - as_utc(run.started_at)).total_seconds()
        unresolved = self.session.scalars(
            select(MigrationError.id).where(MigrationError.run_id == run.id, MigrationError.resolved.is_(False))
        ).all()
        return RunSummary(
            id=run.id,
            integration_id=run.integration_id,
            run_type=run.run_type.value,
            status=run.status.value,
            phases=[phase.value for phase in run.requested_phases],
            processed=run.processed_count,
            created=run.created_count,
            updated=run.updated_count,
            skipped=run.skipped_count,
            errored=run.error_count,
            checkpoint=run.checkpoint,
            error_summary=run.error_summary,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=duration,
            unresolved_errors=len(unresolved),
        )

    # Writes ----------------------------------------------------------------------

    def create_run(
        self,
        integration_id: int,
        *,
        run_type: RunType = RunType.FULL,
        phases: Iterable[ImportPhase | str] | None = None,
    ) -> MigrationRun:
        run = MigrationRun(
            integration_id=integration_id,
            run_type=run_type,
            entity_types=[phase.value for phase in ordered_phases(phases)],
            status=RunStatus.PENDING,
            processed_count=0,
            created_count=0,
            updated_count=0,
            skipped_count=0,
            error_count=0,
        )
        self.session.add(run)
        self.session.flush()
        return run

    def set_status(self, run: MigrationRun, status: RunStatus, *, now: datetime | None = None) -> MigrationRun:
        now = now or _utcnow()
        run.status = status
        if status is RunStatus.RUNNING and run.started_at is None:
            run.started_at = now
        if status in TERMINAL_RUN_STATUSES:
            run.completed_at = now
        run.touch()
        record_run_transition(status.value)
        return run

    def save_checkpoint(self, run: MigrationRun, checkpoint: Checkpoint) -> None:
        # Fresh dict on every write; JSON columns do not track in-place mutation.
        run.checkpoint = checkpoint.to_dict()
        run.touch()

    def mark_continued(self, run: MigrationRun) -> None:
        checkpoint = Checkpoint.from_dict(run.checkpoint)
        if checkpoint is not None and not checkpoint.continued:
            self.save_checkpoint(run, checkpoint.mark_continued())

    def apply_page_progress(
        self,
        run: MigrationRun,
        *,
        phase: ImportPhase,
        processed: int,
        result: BatchResult,
        checkpoint: Checkpoint,
    ) -> None:
        """Stage counters, errors and the checkpoint for one completed page."""
        run.processed_count = (run.processed_count or 0) + processed
        run.created_count = (run.created_count or 0) + result.created
        run.updated_count = (run.updated_count or 0) + result.updated
        run.skipped_count = (run.skipped_count or 0) + result.skipped
        run.error_count = (run.error_count or 0) + result.errored
        self.record_errors(run, phase, result.errors)
        self.save_checkpoint(run, checkpoint)

    def record_errors(self, run: MigrationRun, phase: ImportPhase | str, errors: Iterable[RecordError]) -> list[MigrationError]:
        """Add error rows; an identical unresolved error counts as a retry instead of a new row."""
        entity_type = ImportPhase(phase).value
        rows: list[MigrationError] = []
        for error in errors:
            existing = self.session.scalars(
                select(MigrationError).where(
                    MigrationError.run_id == run.id,
                    MigrationError.entity_type == entity_type,
                    MigrationError.external_id == error.external_id
                    if error.external_id is not None
                    else MigrationError.external_id.is_(None),
                    MigrationError.error_type == error.kind,
                    MigrationError.message == error.message,
                    MigrationError.resolved.is_(False),
                )
            ).first()
            if existing is not None:
                existing.mark_retried()
                rows.append(existing)
                continue
            row = MigrationError(
                run_id=run.id,
                entity_type=entity_type,
                external_id=error.external_id,
                error_type=error.kind,
                message=error.message,
                details=dict(error.details) if error.details else None,
                retry_count=0,
                resolved=False,
            )
            self.session.add(row)
            rows.append(row)
        self.session.flush()
        return rows

    def merge_checkpoint_error(
        self,
        run: MigrationRun,
        *,
        message: str,
        kind: MigrationErrorType,
        status_code: int | None = None,
        body: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Attach the failure to the checkpoint without losing the last completed position."""
        checkpoint = dict(run.checkpoint or {})
        checkpoint["error"] = {
            "message": message,
            "kind": kind.value,
            "status_code": status_code,
            "body": body[:ERROR_BODY_LIMIT] if body else body,
            "timestamp": (now or _utcnow()).isoformat(),
        }
        run.checkpoint = checkpoint
        run.error_summary = message
        run.touch()

    def resolve_error(self, error_id: int) -> MigrationError:
        error = self.session.get(MigrationError, error_id)
        if error is None:
            raise NoResultFound(f"Migration error {error_id} not found.")
        if not error.resolved:
            error.mark_resolved()
        return error


__all__ = ["MigrationRunService", "RunSummary"]
