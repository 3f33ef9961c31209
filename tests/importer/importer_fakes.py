"""Fakes and Lawmatics payload builders shared by the importer tests."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import urlparse

from practice_app.importer.adapters.lawmatics.client import LawmaticsClient
from practice_app.importer.pipeline.orchestrator import MigrationOrchestrator
from practice_app.importer.queue import EnqueueError

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# Lawmatics payload builders -------------------------------------------------------


def user_record(external_id: str, email: str | None, first_name: str = "Sam", last_name: str = "Staff", **extra):
    return {
        "id": external_id,
        "type": "user",
        "attributes": {"email": email, "first_name": first_name, "last_name": last_name, **extra},
    }


def contact_record(
    external_id: str,
    *,
    first_name: str | None = "Casey",
    last_name: str | None = "Client",
    email: str | None = None,
    **extra,
):
    return {
        "id": external_id,
        "type": "contact",
        "attributes": {"first_name": first_name, "last_name": last_name, "email": email, **extra},
    }


def prospect_record(
    external_id: str,
    *,
    contact_id: str | None,
    attorney_id: str | None = None,
    **attributes,
):
    relationships: dict[str, Any] = {}
    if contact_id is not None:
        relationships["contact"] = {"data": {"id": contact_id, "type": "contact"}}
    if attorney_id is not None:
        relationships["lead_attorney"] = {"data": {"id": attorney_id, "type": "user"}}
    return {"id": external_id, "type": "prospect", "attributes": attributes, "relationships": relationships}


def note_record(external_id: str, *, contact_id: str | None = None, prospect_id: str | None = None, content="A note"):
    relationships: dict[str, Any] = {}
    if contact_id is not None:
        relationships["contact"] = {"data": {"id": contact_id}}
    if prospect_id is not None:
        relationships["prospect"] = {"data": [{"id": prospect_id}]}
    return {"id": external_id, "type": "note", "attributes": {"content": content}, "relationships": relationships}


def activity_record(external_id: str, *, contact_id: str | None = None, activity_type: str = "email_sent", **attributes):
    relationships = {"contact": {"data": {"id": contact_id}}} if contact_id else {}
    return {
        "id": external_id,
        "type": "timeline_item",
        "attributes": {"activity_type": activity_type, **attributes},
        "relationships": relationships,
    }


def lawmatics_page(
    records, *, page: int = 1, total_pages: int = 1, per_page: int = 100, total_count: int | None = None
) -> dict[str, Any]:
    return {
        "data": list(records),
        "meta": {
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "total_count": total_count if total_count is not None else len(records) * total_pages,
                "per_page": per_page,
            }
        },
    }


# HTTP fakes -------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, *, headers: Mapping[str, str] | None = None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = dict(headers or {})
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``; answers by endpoint path and page number."""

    def __init__(self, pages: Mapping[str, Any] | None = None):
        self.pages: dict[str, Any] = dict(pages or {})
        self.calls: list[dict[str, Any]] = []

    def add(self, endpoint: str, *responses) -> None:
        """Register ``responses`` for pages 1..n of ``endpoint``; payload dicts become 200s."""
        for index, response in enumerate(responses, start=1):
            self.pages[f"{endpoint}?page={index}"] = response

    def get(self, url, *, headers=None, params=None, timeout=None):
        params = dict(params or {})
        self.calls.append({"url": url, "headers": headers, "params": params, "timeout": timeout})
        path = urlparse(url).path.rsplit("/v1", 1)[-1]
        key = f"{path}?page={params.get('page', 1)}"
        response = self.pages.get(key)
        if response is None:
            return FakeResponse(200, lawmatics_page([], page=int(params.get("page", 1))))
        if isinstance(response, Exception):
            raise response
        if isinstance(response, FakeResponse):
            return response
        return FakeResponse(200, response)


def build_client(session: FakeSession) -> LawmaticsClient:
    return LawmaticsClient(access_token="test-token", base_url="https://lawmatics.test/v1", session=session)


# Queue fakes ----------------------------------------------------------------------


class RecordingQueue:
    """Collects enqueued messages instead of sending them to Celery."""

    def __init__(self):
        self.messages = []

    def enqueue(self, message) -> None:
        self.messages.append(message)

    def pop_all(self):
        messages, self.messages = self.messages, []
        return messages

    @property
    def payloads(self):
        return [message.to_payload() for message in self.messages]


class FailingQueue(RecordingQueue):
    """Accepts the first ``fail_after`` messages, then raises like a broker outage."""

    def __init__(self, fail_after: int = 0):
        super().__init__()
        self.fail_after = fail_after
        self.sent = 0

    def enqueue(self, message) -> None:
        if self.sent >= self.fail_after:
            raise EnqueueError("broker unavailable", payload=message.to_payload())
        self.sent += 1
        super().enqueue(message)


def drain(orchestrator: MigrationOrchestrator, queue: RecordingQueue, *, limit: int = 100):
    """Deliver queued messages one at a time until the queue is empty; return the reports."""
    reports = []
    for _ in range(limit):
        if not queue.messages:
            return reports
        message = queue.messages.pop(0)
        reports.append(orchestrator.handle_message(message.to_payload()))
    raise AssertionError("migration did not settle within the delivery limit")


