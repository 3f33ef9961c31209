from __future__ import annotations

import pytest
from celery.exceptions import Retry
from importer_fakes import FakeResponse, RecordingQueue, lawmatics_page, user_record

from practice_app.importer import tasks
from practice_app.models import MigrationError, MigrationErrorType, MigrationRun, RunStatus, db


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def orchestrator(orchestrator_factory, queue, monkeypatch):
    instance = orchestrator_factory(queue)
    monkeypatch.setattr(tasks, "build_orchestrator", lambda celery_app=None: instance)
    return instance


@pytest.fixture
def import_page_task():
    task = tasks.import_page._get_current_object()
    yield task
    while task.request_stack.top is not None:
        task.pop_request()


def _started_run(orchestrator, queue, integration, **kwargs):
    run = orchestrator.start_run(integration.id, **kwargs)
    [message] = queue.pop_all()
    return run, message.to_payload()


def test_rate_limit_countdown_prefers_retry_after():
    assert tasks.rate_limit_countdown(12, 0) == 12.0
    assert tasks.rate_limit_countdown(5000, 0) == tasks.MAX_RATE_LIMIT_DELAY


def test_rate_limit_countdown_backs_off_exponentially(app):
    assert app.config["IMPORTER_RATE_LIMIT_DEFAULT_DELAY"] == 1.0
    assert tasks.rate_limit_countdown(None, 0) == 1.0
    assert tasks.rate_limit_countdown(0, 3) == 8.0
    assert tasks.rate_limit_countdown(None, 20) == tasks.MAX_RATE_LIMIT_DELAY


def test_import_page_task_returns_step_report(orchestrator, queue, integration, fake_session, import_page_task):
    fake_session.add("/users", lawmatics_page([user_record("u1", "one@lawfirm.com")]))
    run, payload = _started_run(orchestrator, queue, integration, phases=["users"])

    result = import_page_task.run(payload=payload)

    assert result["outcome"] == "processed"
    assert result["counts"]["created"] == 1
    assert queue.payloads == [{"type": "PHASE_COMPLETE", "run_id": run.id, "phase": "users"}]


def test_rate_limited_page_is_retried(orchestrator, queue, integration, fake_session, import_page_task, monkeypatch):
    fake_session.add("/users", FakeResponse(429, {"errors": []}, headers={"Retry-After": "12"}))
    run, payload = _started_run(orchestrator, queue, integration)
    retries = []

    def fake_retry(**kwargs):
        retries.append(kwargs)
        return Retry("retrying", exc=kwargs.get("exc"), when=kwargs.get("countdown"))

    monkeypatch.setattr(import_page_task, "retry", fake_retry)
    import_page_task.push_request(retries=2)

    with pytest.raises(Retry):
        import_page_task.run(payload=payload)

    [call] = retries
    assert call["countdown"] == 12.0
    assert call["max_retries"] == 8
    assert db.session.get(MigrationRun, run.id).status is RunStatus.RUNNING
    assert db.session.query(MigrationError).count() == 0


def test_exhausted_rate_limit_retries_fail_the_run(orchestrator, queue, integration, fake_session, import_page_task):
    fake_session.add("/users", FakeResponse(429, {"errors": []}, headers={"Retry-After": "12"}))
    run, payload = _started_run(orchestrator, queue, integration)
    import_page_task.push_request(retries=8)

    result = import_page_task.run(payload=payload)

    assert result == {"run_id": run.id, "outcome": "failed"}
    db.session.expire_all()
    assert db.session.get(MigrationRun, run.id).status is RunStatus.FAILED
    [error] = db.session.query(MigrationError).all()
    assert error.error_type is MigrationErrorType.API
    assert error.details["retry_after"] == 12.0
    assert "retries exhausted" in error.message


def test_unexpected_error_fails_run_and_propagates(orchestrator, queue, integration, import_page_task):
    run, payload = _started_run(orchestrator, queue, integration)

    def broken_factory(integration):
        raise ValueError("client factory misconfigured")

    orchestrator.client_factory = broken_factory

    with pytest.raises(ValueError, match="misconfigured"):
        import_page_task.run(payload=payload)

    db.session.expire_all()
    run = db.session.get(MigrationRun, run.id)
    assert run.status is RunStatus.FAILED
    assert run.checkpoint["error"]["kind"] == "validation"


def test_phase_complete_task_advances_run(orchestrator, queue, integration):
    run, _ = _started_run(orchestrator, queue, integration, phases=["users", "contacts"])

    result = tasks.phase_complete.run(payload={"type": "PHASE_COMPLETE", "run_id": run.id, "phase": "users"})

    assert result["outcome"] == "processed"
    assert queue.payloads[0]["phase"] == "contacts"
    assert queue.payloads[0]["page"] == 1


def test_healthcheck_reports_ok():
    result = tasks.importer_healthcheck.run()

    assert result["status"] == "ok"
    assert "timestamp" in result
