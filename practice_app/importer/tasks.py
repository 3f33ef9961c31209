"""
Importer Celery tasks.

``import_page`` and ``phase_complete`` are thin shells around the migration
orchestrator: they rebuild it inside the worker's app context, hand it the
message payload and translate rate limits into Celery retries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from practice_app.importer.adapters.lawmatics import RateLimitError
from practice_app.importer.adapters.lawmatics.client import get_client_factory
from practice_app.importer.celery_app import get_celery_app
from practice_app.importer.pipeline.orchestrator import MigrationOrchestrator
from practice_app.importer.queue import IMPORT_PAGE_TASK, PHASE_COMPLETE_TASK, CeleryMessageQueue
from practice_app.models import MigrationErrorType
from practice_app.models.base import db

DEFAULT_RATE_LIMIT_MAX_RETRIES = 8
DEFAULT_RATE_LIMIT_DELAY = 30.0
MAX_RATE_LIMIT_DELAY = 15 * 60.0


def build_orchestrator(celery_app=None) -> MigrationOrchestrator:
    """Orchestrator wired to the app's Celery queue and the configured client factory."""
    celery_app = celery_app or get_celery_app(current_app)
    return MigrationOrchestrator(CeleryMessageQueue(celery_app), get_client_factory(current_app))


def rate_limit_countdown(retry_after: float | None, retries: int) -> float:
    """Honor ``Retry-After`` when given, otherwise back off exponentially within a ceiling."""
    if retry_after is not None and retry_after > 0:
        return min(float(retry_after), MAX_RATE_LIMIT_DELAY)
    base = float(current_app.config.get("IMPORTER_RATE_LIMIT_DEFAULT_DELAY", DEFAULT_RATE_LIMIT_DELAY))
    return min(base * (2**retries), MAX_RATE_LIMIT_DELAY)


def _fail_and_log(orchestrator: MigrationOrchestrator, payload: dict[str, Any], exc: Exception) -> None:
    db.session.rollback()
    run_id = payload.get("run_id")
    kind = MigrationErrorType.INSERT if isinstance(exc, SQLAlchemyError) else MigrationErrorType.VALIDATION
    if isinstance(run_id, int):
        orchestrator.fail_run(run_id, message=str(exc), kind=kind)
    current_app.logger.exception(
        "Migration step failed",
        extra={"importer_run_id": run_id, "importer_payload": payload, "importer_error": str(exc)},
    )


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=IMPORT_PAGE_TASK, bind=True)
def import_page(self, *, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Fetch, process and checkpoint one page, then enqueue the next step.
    """
    orchestrator = build_orchestrator(self.app)
    try:
        report = orchestrator.handle_import_page(payload)
    except RateLimitError as exc:
        max_retries = int(current_app.config.get("IMPORTER_RATE_LIMIT_MAX_RETRIES", DEFAULT_RATE_LIMIT_MAX_RETRIES))
        if self.request.retries >= max_retries:
            orchestrator.fail_run(
                int(payload["run_id"]),
                message=f"Rate limit retries exhausted after {self.request.retries} attempts: {exc}",
                kind=MigrationErrorType.API,
                details={"page": payload.get("page"), "retry_after": exc.retry_after},
            )
            return {"run_id": payload.get("run_id"), "outcome": "failed"}
        countdown = rate_limit_countdown(exc.retry_after, self.request.retries)
        current_app.logger.warning(
            "Lawmatics rate limit; retrying migration page",
            extra={
                "importer_run_id": payload.get("run_id"),
                "importer_phase": payload.get("phase"),
                "importer_page": payload.get("page"),
                "importer_retry_countdown": countdown,
                "importer_retry_attempt": self.request.retries + 1,
            },
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_retries)
    except Exception as exc:
        _fail_and_log(orchestrator, payload, exc)
        raise
    return report.to_dict()


@shared_task(name=PHASE_COMPLETE_TASK, bind=True)
def phase_complete(self, *, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Advance the run to its next requested phase, or complete it.
    """
    orchestrator = build_orchestrator(self.app)
    try:
        report = orchestrator.handle_phase_complete(payload)
    except Exception as exc:
        _fail_and_log(orchestrator, payload, exc)
        raise
    return report.to_dict()
