"""
Queue port for migration step messages.

The orchestrator only knows ``MessageQueue.enqueue``. ``CeleryMessageQueue``
maps each message type onto its Celery task; delivery is at-least-once
(late acks, prefetch of one) and the orchestrator tolerates redelivery.
"""

from __future__ import annotations

import logging
from typing import Protocol

from celery import Celery
from celery.exceptions import CeleryError
from kombu.exceptions import KombuError

from practice_app.importer.pipeline.state_machine import Message, MessageType

IMPORT_PAGE_TASK = "importer.migration.import_page"
PHASE_COMPLETE_TASK = "importer.migration.phase_complete"

TASK_NAMES = {
    MessageType.IMPORT_PAGE: IMPORT_PAGE_TASK,
    MessageType.PHASE_COMPLETE: PHASE_COMPLETE_TASK,
}

logger = logging.getLogger(__name__)


class EnqueueError(RuntimeError):
    """Raised when a message could not be handed to the queue."""

    def __init__(self, message: str, *, payload: dict | None = None) -> None:
        super().__init__(message)
        self.payload = payload


class MessageQueue(Protocol):
    def enqueue(self, message: Message) -> None:
        ...


class CeleryMessageQueue:
    """Send migration messages to the importer Celery tasks."""

    def __init__(self, celery_app: Celery, *, queue: str | None = None) -> None:
        self.celery_app = celery_app
        self.queue = queue

    def enqueue(self, message: Message) -> None:
        payload = message.to_payload()
        task_name = TASK_NAMES[message.type]
        options = {"queue": self.queue} if self.queue else {}
        try:
            task = self.celery_app.tasks[task_name]
            task.apply_async(kwargs={"payload": payload}, **options)
        except KeyError as exc:
            raise EnqueueError(f"Celery task {task_name} is not registered", payload=payload) from exc
        except (CeleryError, KombuError, OSError) as exc:
            logger.error(
                "Failed to enqueue migration message",
                extra={"importer_task_name": task_name, "importer_payload": payload, "importer_error": str(exc)},
            )
            raise EnqueueError(f"Could not enqueue {message.type.value} for run {message.run_id}: {exc}", payload=payload) from exc
        logger.debug(
            "Migration message enqueued",
            extra={"importer_task_name": task_name, "importer_payload": payload},
        )
