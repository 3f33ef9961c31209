import json
from unittest.mock import patch

import pytest
from importer_fakes import FakeResponse, RecordingQueue, build_client, lawmatics_page, user_record

from practice_app.importer import init_importer, register_client_factory
from practice_app.importer.pipeline.run_service import MigrationRunService
from practice_app.importer.pipeline.upsert import RecordError
from practice_app.models import ImportPhase, Integration, IntegrationStatus, MigrationErrorType, db


def _ensure_importer(app, **overrides):
    config = {
        "IMPORTER_ENABLED": True,
        "CELERY_BROKER_URL": "memory://",
        "CELERY_RESULT_BACKEND": "cache+memory://",
    }
    config.update(overrides)
    app.config.update(config)
    init_importer(app)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def cli(app, runner, orchestrator_factory, queue):
    """Invoke ``flask importer ...`` with the orchestrator wired to a recording queue."""
    _ensure_importer(app)
    orchestrator = orchestrator_factory(queue)

    def invoke(*args):
        with patch("practice_app.importer.cli._build_orchestrator", return_value=orchestrator):
            return runner.invoke(args=["importer", *args])

    return invoke


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_integrations_create_and_list(cli):
    created = _json(cli("integrations", "create", "--name", "Lawmatics", "--credentials-key", "lawmatics/main"))

    assert created["name"] == "Lawmatics"
    assert created["status"] == "configured"
    integration = db.session.get(Integration, created["id"])
    assert integration.credentials_key == "lawmatics/main"

    listed = _json(cli("integrations", "list"))
    assert [item["id"] for item in listed] == [created["id"]]
    assert listed[0]["last_sync_timestamps"] == {}


def test_migrations_start_enqueues_first_page(cli, queue, integration):
    summary = _json(cli("migrations", "start", "--integration", str(integration.id), "--phase", "notes", "--phase", "users"))

    assert summary["status"] == "running"
    assert summary["phases"] == ["users", "notes"]
    assert summary["run_type"] == "full"
    assert queue.payloads == [
        {
            "type": "IMPORT_PAGE",
            "run_id": summary["id"],
            "phase": "users",
            "page": 1,
            "per_page": 100,
            "filter": {"updated_since": None},
        }
    ]


def test_migrations_start_reports_rejections(cli, integration):
    missing = cli("migrations", "start", "--integration", "999")
    assert missing.exit_code != 0
    assert "Integration 999 not found" in missing.output

    _json(cli("migrations", "start", "--integration", str(integration.id)))
    again = cli("migrations", "start", "--integration", str(integration.id))
    assert again.exit_code != 0
    assert "already active" in again.output


def test_migrations_pause_resume_cancel(cli, queue, integration):
    run_id = _json(cli("migrations", "start", "--integration", str(integration.id)))["id"]
    queue.pop_all()

    assert _json(cli("migrations", "pause", str(run_id)))["status"] == "paused"
    assert _json(cli("migrations", "resume", str(run_id)))["status"] == "running"
    assert queue.payloads[0]["phase"] == "users"
    assert _json(cli("migrations", "cancel", str(run_id)))["status"] == "cancelled"

    rejected = cli("migrations", "resume", str(run_id))
    assert rejected.exit_code != 0
    assert "Cannot resume migration run" in rejected.output

    unknown = cli("migrations", "pause", "404")
    assert unknown.exit_code != 0


def test_migrations_status(cli, integration):
    run_id = _json(cli("migrations", "start", "--integration", str(integration.id), "--type", "incremental"))["id"]

    single = _json(cli("migrations", "status", str(run_id)))
    assert single["id"] == run_id
    assert single["run_type"] == "incremental"
    assert single["counters"]["processed"] == 0

    recent = _json(cli("migrations", "status", "--integration", str(integration.id)))
    assert [item["id"] for item in recent] == [run_id]

    missing = cli("migrations", "status", "404")
    assert missing.exit_code != 0


def test_migrations_errors_and_resolve(cli, integration):
    service = MigrationRunService(db.session)
    run = service.create_run(integration.id)
    [error] = service.record_errors(
        run, ImportPhase.PROSPECTS, [RecordError("p2", MigrationErrorType.IDENTITY, "Contact c2 is not a person")]
    )
    service.record_errors(run, ImportPhase.USERS, [RecordError("u9", MigrationErrorType.VALIDATION, "bad email")])
    db.session.commit()

    listed = _json(cli("migrations", "errors", str(run.id), "--phase", "prospects"))
    assert [item["external_id"] for item in listed] == ["p2"]
    assert listed[0]["error_type"] == "identity"

    resolved = _json(cli("migrations", "resolve-error", str(error.id)))
    assert resolved["resolved"] is True

    assert [item["external_id"] for item in _json(cli("migrations", "errors", str(run.id)))] == ["u9"]
    assert len(_json(cli("migrations", "errors", str(run.id), "--all"))) == 2
    assert cli("migrations", "resolve-error", "9999").exit_code != 0


def test_lawmatics_check_reports_counts(app, cli, integration, fake_session):
    fake_session.add("/users", lawmatics_page([user_record("u1", "one@lawfirm.com")], total_count=4))
    fake_session.add("/contacts", lawmatics_page([], total_count=250))
    register_client_factory(app, lambda record: build_client(fake_session))

    payload = _json(cli("lawmatics", "check", "--integration", str(integration.id)))

    assert payload["connected"] is True
    assert payload["counts"]["users"] == 4
    assert payload["counts"]["contacts"] == 250
    assert db.session.get(Integration, integration.id).status is IntegrationStatus.CONNECTED


def test_lawmatics_check_failure_marks_integration(app, cli, integration, fake_session):
    fake_session.add("/users", FakeResponse(401, {"error": "unauthorized"}, text="unauthorized"))
    register_client_factory(app, lambda record: build_client(fake_session))

    result = cli("lawmatics", "check", "--integration", str(integration.id), "--no-counts")

    assert result.exit_code != 0
    assert "Lawmatics connection failed" in result.output
    assert db.session.get(Integration, integration.id).status is IntegrationStatus.ERROR


def test_lawmatics_check_without_token(app, cli, integration):
    app.config["LAWMATICS_ACCESS_TOKEN"] = None

    result = cli("lawmatics", "check", "--integration", str(integration.id))

    assert result.exit_code != 0
    assert "No Lawmatics access token" in result.output


def test_disabled_importer_group(app, runner):
    init_importer(app)

    result = runner.invoke(args=["importer"])

    assert result.exit_code != 0
    assert "Importer commands are unavailable" in result.output
