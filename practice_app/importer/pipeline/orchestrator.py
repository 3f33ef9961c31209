"""
Migration orchestrator service.

Owns every ``MigrationRun`` transition. Control operations (start, resume,
pause, cancel) come from operators; ``IMPORT_PAGE`` and ``PHASE_COMPLETE``
messages come from the queue. Decisions are delegated to the pure
``state_machine`` module; this class loads state, performs I/O and carries out
the returned effects.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from practice_app.importer.adapters.lawmatics import (
    LawmaticsAdapterConfigError,
    LawmaticsApiError,
    resolve_access_token,
)
from practice_app.importer.adapters.lawmatics.client import LawmaticsClient, create_lawmatics_client
from practice_app.importer.metrics import record_migration_page
from practice_app.importer.pipeline.caches import CacheRegistry
from practice_app.importer.pipeline.processing import PageProcessor
from practice_app.importer.pipeline.run_service import MigrationRunService
from practice_app.importer.pipeline.state_machine import (
    Delivery,
    ImportPageMessage,
    Message,
    PageOutcome,
    PhaseCompleteMessage,
    Transition,
    delivery_for,
    message_from_payload,
    ordered_phases,
    plan_resume,
    plan_start,
    reemit,
    transition,
)
from practice_app.importer.pipeline.upsert import RecordError
from practice_app.importer.queue import EnqueueError, MessageQueue
from practice_app.models import (
    TERMINAL_RUN_STATUSES,
    ImportPhase,
    Integration,
    IntegrationStatus,
    MigrationErrorType,
    MigrationRun,
    RunStatus,
    RunType,
    db,
)
from practice_app.models.base import as_utc

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Integration], LawmaticsClient]


class MigrationRunError(RuntimeError):
    """Base error for rejected run control operations."""


class RunAlreadyActiveError(MigrationRunError):
    def __init__(self, existing_run_id: int) -> None:
        super().__init__(f"Migration run {existing_run_id} is already active for this integration.")
        self.existing_run_id = existing_run_id


class InvalidRunTransition(MigrationRunError):
    def __init__(self, run_id: int, status: RunStatus, action: str) -> None:
        super().__init__(f"Cannot {action} migration run {run_id} while it is {status.value}.")
        self.run_id = run_id
        self.status = status
        self.action = action


class IntegrationNotReadyError(MigrationRunError):
    pass


class MigrationStartError(MigrationRunError):
    """The run was created but its first message could not be enqueued; the run is FAILED."""

    def __init__(self, run_id: int, message: str) -> None:
        super().__init__(message)
        self.run_id = run_id


@dataclass(frozen=True)
class StepReport:
    """Outcome of handling one queue message."""

    run_id: int
    message_type: str
    phase: str
    page: int | None
    outcome: str
    counts: Mapping[str, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "message_type": self.message_type,
            "phase": self.phase,
            "page": self.page,
            "outcome": self.outcome,
            "counts": dict(self.counts) if self.counts is not None else None,
        }


def _report(message: Message, outcome: str, counts: Mapping[str, int] | None = None) -> StepReport:
    return StepReport(
        run_id=message.run_id,
        message_type=message.type.value,
        phase=message.phase.value,
        page=message.page if isinstance(message, ImportPageMessage) else None,
        outcome=outcome,
        counts=counts,
    )


class MigrationOrchestrator:
    def __init__(
        self,
        queue: MessageQueue,
        client_factory: ClientFactory = create_lawmatics_client,
        session: Session | None = None,
        *,
        caches: CacheRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.queue = queue
        self.client_factory = client_factory
        self.session: Session = session or db.session
        self.caches = caches or CacheRegistry()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.runs = MigrationRunService(self.session)

    # Control operations ----------------------------------------------------------

    def start_run(
        self,
        integration_id: int,
        *,
        run_type: RunType | str = RunType.FULL,
        phases: Iterable[ImportPhase | str] | None = None,
    ) -> MigrationRun:
        run_type = RunType(run_type)
        requested = ordered_phases(phases)
        integration = self.session.get(Integration, integration_id)
        if integration is None:
            raise NoResultFound(f"Integration {integration_id} not found.")
        self._ensure_ready(integration)

        active = self.runs.find_active_run(integration_id)
        if active is not None:
            raise RunAlreadyActiveError(active.id)

        run = self.runs.create_run(integration_id, run_type=run_type, phases=requested)
        self.session.commit()
        self.reset_caches(run.id)

        plan = plan_start(run.id, run_type, requested, integration.last_sync_timestamps)
        # delivery_for ignores pages of runs that are not RUNNING, so the status must be
        # committed before the first enqueue; a failed enqueue then moves the run to FAILED.
        self.runs.set_status(run, RunStatus.RUNNING, now=self.clock())
        self.session.commit()

        if not self._emit(run, plan, phase=requested[0]):
            raise MigrationStartError(run.id, f"Migration run {run.id} failed to enqueue its first page.")
        logger.info(
            "Migration run started",
            extra={
                "importer_run_id": run.id,
                "importer_integration_id": integration_id,
                "importer_run_type": run_type.value,
                "importer_phases": [phase.value for phase in requested],
            },
        )
        return run

    def resume_run(self, run_id: int) -> MigrationRun:
        run = self.runs.get_run(run_id)
        if run.status is not RunStatus.PAUSED:
            raise InvalidRunTransition(run.id, run.status, "resume")
        active = self.runs.find_active_run(run.integration_id)
        if active is not None and active.id != run.id:
            raise RunAlreadyActiveError(active.id)
        self._ensure_ready(run.integration)
        self.reset_caches(run.id)

        plan = plan_resume(self.runs.run_state(run))
        if plan.completes:
            self._complete(run)
            self.session.commit()
            return run

        self.runs.set_status(run, RunStatus.RUNNING, now=self.clock())
        self.session.commit()
        message = plan.messages[0]
        if not self._emit(run, plan, phase=message.phase):
            raise MigrationStartError(run.id, f"Migration run {run.id} failed to enqueue its resume point.")
        logger.info(
            "Migration run resumed",
            extra={"importer_run_id": run.id, "importer_phase": message.phase.value, "importer_message": message.to_payload()},
        )
        return run

    def pause_run(self, run_id: int) -> MigrationRun:
        run = self.runs.get_run(run_id)
        if run.status is not RunStatus.RUNNING:
            raise InvalidRunTransition(run.id, run.status, "pause")
        self.runs.set_status(run, RunStatus.PAUSED, now=self.clock())
        self.session.commit()
        logger.info("Migration run paused", extra={"importer_run_id": run.id})
        return run

    def cancel_run(self, run_id: int) -> MigrationRun:
        run = self.runs.get_run(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            raise InvalidRunTransition(run.id, run.status, "cancel")
        self.runs.set_status(run, RunStatus.CANCELLED, now=self.clock())
        self.session.commit()
        self.reset_caches(run.id)
        logger.info("Migration run cancelled", extra={"importer_run_id": run.id})
        return run

    def reset_caches(self, run_id: int | None = None) -> None:
        self.caches.reset(run_id)

    # Queue messages --------------------------------------------------------------

    def handle_import_page(self, message: ImportPageMessage | Mapping[str, Any]) -> StepReport:
        if not isinstance(message, ImportPageMessage):
            message = ImportPageMessage.from_payload(message)

        run = self.runs.find_run(message.run_id)
        if run is None:
            logger.warning("Import page for unknown migration run", extra={"importer_run_id": message.run_id})
            return _report(message, "ignored")

        state = self.runs.run_state(run)
        delivery = delivery_for(state, message)
        if delivery is not Delivery.PROCESS:
            return self._handle_redelivery(run, message, delivery)

        started = time.monotonic()
        try:
            client = self.client_factory(run.integration)
            page = client.fetch_phase_page(
                message.phase,
                page=message.page,
                per_page=message.per_page,
                updated_since=message.filter.updated_since,
            )
        except (LawmaticsApiError, LawmaticsAdapterConfigError) as exc:
            record_migration_page(phase=message.phase.value, status="failure", duration_seconds=time.monotonic() - started)
            self.fail_run(
                run.id,
                message=str(exc),
                kind=MigrationErrorType.API,
                phase=message.phase,
                status_code=getattr(exc, "status_code", None),
                body=getattr(exc, "body", None),
                details={"page": message.page, "filter": message.filter.to_dict()},
            )
            return _report(message, "failed")

        caches = self.caches.get(run.id, self.session)
        try:
            result = PageProcessor(run.id, caches, self.session, clock=self.clock).process(message.phase, page.records)
        finally:
            self.reset_caches(run.id)

        # The page ran while RUNNING; record it even if the run was paused meanwhile.
        self.session.refresh(run)
        step = transition(
            replace(state, status=RunStatus.RUNNING),
            message,
            page_outcome=PageOutcome(has_more=page.has_more),
            now=self.clock(),
        )
        self.runs.apply_page_progress(
            run,
            phase=message.phase,
            processed=len(page.records),
            result=result,
            checkpoint=step.checkpoint,
        )
        self.session.commit()
        record_migration_page(phase=message.phase.value, status="success", duration_seconds=time.monotonic() - started)

        counts = {"processed": len(page.records), **result.to_dict()}
        logger.info(
            "Migration page imported",
            extra={
                "importer_run_id": run.id,
                "importer_phase": message.phase.value,
                "importer_page": message.page,
                "importer_has_more": page.has_more,
                **{f"importer_{key}": value for key, value in counts.items()},
            },
        )
        if run.status is not RunStatus.RUNNING:
            return _report(message, "processed", counts)
        if not self._emit(run, step, phase=message.phase):
            return _report(message, "failed", counts)
        return _report(message, "processed", counts)

    def handle_phase_complete(self, message: PhaseCompleteMessage | Mapping[str, Any]) -> StepReport:
        if not isinstance(message, PhaseCompleteMessage):
            message = PhaseCompleteMessage.from_payload(message)

        run = self.runs.find_run(message.run_id)
        if run is None:
            logger.warning("Phase completion for unknown migration run", extra={"importer_run_id": message.run_id})
            return _report(message, "ignored")

        state = self.runs.run_state(run)
        delivery = delivery_for(state, message)
        if delivery is not Delivery.PROCESS:
            return self._handle_redelivery(run, message, delivery)

        step = transition(state, message, now=self.clock())
        logger.info(
            "Migration phase complete",
            extra={"importer_run_id": run.id, "importer_phase": message.phase.value},
        )
        if step.completes:
            self._complete(run)
            self.session.commit()
            return _report(message, "completed")

        self.runs.save_checkpoint(run, step.checkpoint)
        self.session.commit()
        if not self._emit(run, step, phase=step.checkpoint.phase):
            return _report(message, "failed")
        return _report(message, "processed")

    def handle_message(self, payload: Mapping[str, Any]) -> StepReport:
        message = message_from_payload(payload)
        if isinstance(message, ImportPageMessage):
            return self.handle_import_page(message)
        return self.handle_phase_complete(message)

    # Failure handling ------------------------------------------------------------

    def fail_run(
        self,
        run_id: int,
        *,
        message: str,
        kind: MigrationErrorType,
        phase: ImportPhase | None = None,
        status_code: int | None = None,
        body: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> MigrationRun | None:
        """Mark the run FAILED, keep the checkpoint position and record why."""
        self.session.rollback()
        run = self.runs.find_run(run_id)
        if run is None:
            return None
        if run.status in TERMINAL_RUN_STATUSES:
            return run

        state = self.runs.run_state(run)
        error_phase = phase or (state.checkpoint.phase if state.checkpoint else state.requested[0])
        self.runs.merge_checkpoint_error(
            run,
            message=message,
            kind=kind,
            status_code=status_code,
            body=body,
            now=self.clock(),
        )
        error_details = dict(details or {})
        if status_code is not None:
            error_details["status_code"] = status_code
        self.runs.record_errors(run, error_phase, [RecordError(None, kind, message, error_details or None)])
        self.runs.set_status(run, RunStatus.FAILED, now=self.clock())
        self.session.commit()
        self.reset_caches(run.id)
        logger.error(
            "Migration run failed",
            extra={
                "importer_run_id": run.id,
                "importer_phase": error_phase.value,
                "importer_error_kind": kind.value,
                "importer_error": message,
            },
        )
        return run

    # Internal helpers ------------------------------------------------------------

    def _ensure_ready(self, integration: Integration) -> None:
        if integration.status is IntegrationStatus.ERROR:
            raise IntegrationNotReadyError(f"Integration {integration.id} is in an error state.")
        try:
            resolve_access_token(integration)
        except LawmaticsAdapterConfigError as exc:
            raise IntegrationNotReadyError(str(exc)) from exc

    def _handle_redelivery(self, run: MigrationRun, message: Message, delivery: Delivery) -> StepReport:
        if delivery is Delivery.REEMIT:
            logger.info(
                "Re-emitting continuation for redelivered migration message",
                extra={"importer_run_id": run.id, "importer_message": message.to_payload()},
            )
            if not self._emit(run, reemit(self.runs.run_state(run)), phase=message.phase):
                return _report(message, "failed")
            return _report(message, "reemitted")
        outcome = "ignored" if delivery is Delivery.IGNORE else "dropped"
        logger.info(
            "Migration message skipped",
            extra={
                "importer_run_id": run.id,
                "importer_run_status": run.status.value,
                "importer_delivery": delivery.value,
                "importer_message": message.to_payload(),
            },
        )
        return _report(message, outcome)

    def _emit(self, run: MigrationRun, step: Transition, *, phase: ImportPhase) -> bool:
        """Enqueue a transition's messages; on failure the run is FAILED and False returned."""
        for message in step.messages:
            try:
                self.queue.enqueue(message)
            except EnqueueError as exc:
                self.fail_run(
                    run.id,
                    message=str(exc),
                    kind=MigrationErrorType.QUEUE,
                    phase=phase,
                    details={"message": message.to_payload()},
                )
                return False
        self.runs.mark_continued(run)
        self.session.commit()
        return True

    def _complete(self, run: MigrationRun) -> None:
        now = self.clock()
        self.runs.set_status(run, RunStatus.COMPLETED, now=now)
        integration = run.integration
        synced_at = (as_utc(run.started_at) or now).isoformat()
        timestamps = dict(integration.last_sync_timestamps or {})
        for phase in run.requested_phases:
            timestamps[phase.value] = synced_at
        integration.last_sync_timestamps = timestamps
        integration.last_sync_at = now
        integration.touch(now)
        self.reset_caches(run.id)
        logger.info(
            "Migration run completed",
            extra={"importer_run_id": run.id, **{f"importer_{key}": value for key, value in run.counters().items()}},
        )


__all__ = [
    "IntegrationNotReadyError",
    "InvalidRunTransition",
    "MigrationOrchestrator",
    "MigrationRunError",
    "MigrationStartError",
    "RunAlreadyActiveError",
    "StepReport",
]
