"""
``flask importer`` commands: worker management, migration run control and
Lawmatics connectivity checks.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy import select
from sqlalchemy.exc import NoResultFound

from practice_app.importer.adapters.lawmatics import LawmaticsAdapterConfigError, LawmaticsClientError
from practice_app.importer.adapters.lawmatics.client import get_client_factory
from practice_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from practice_app.importer.pipeline.orchestrator import MigrationOrchestrator, MigrationRunError
from practice_app.importer.pipeline.run_service import MigrationRunService
from practice_app.models import ImportPhase, Integration, IntegrationStatus, RunType, db
from practice_app.utils.importer import is_importer_enabled, is_worker_enabled


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group(name="importer")
@click.pass_context
def importer_cli(ctx):
    """Lawmatics migration commands."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )


def get_disabled_importer_group() -> click.Group:
    """Stand-in group that tells the operator the importer is disabled."""

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _build_orchestrator(app) -> MigrationOrchestrator:
    from practice_app.importer.tasks import build_orchestrator

    return build_orchestrator(_resolve_celery(app))


def _load_app(ctx):
    return ctx.ensure_object(ScriptInfo).load_app()


def _get_integration(integration_id: int) -> Integration:
    integration = db.session.get(Integration, integration_id)
    if integration is None:
        raise click.ClickException(f"Integration {integration_id} not found.")
    return integration


# Worker ----------------------------------------------------------------------------


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not is_worker_enabled(app):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    app.extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Run the heartbeat task and print its reply."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)


# Integrations ----------------------------------------------------------------------


@importer_cli.group(name="integrations")
def integrations_group():
    """Register and inspect CRM integrations."""


@integrations_group.command("create")
@click.option("--name", required=True, help="Display name for the integration.")
@click.option("--credentials-key", help="Key the credential resolver uses to look up the access token.")
def integrations_create(name: str, credentials_key: Optional[str]):
    integration = Integration(name=name, credentials_key=credentials_key, status=IntegrationStatus.CONFIGURED)
    db.session.add(integration)
    db.session.commit()
    _echo_json({"id": integration.id, "name": integration.name, "status": integration.status.value})


@integrations_group.command("list")
def integrations_list():
    integrations = db.session.scalars(select(Integration).order_by(Integration.id.asc())).all()
    _echo_json(
        [
            {
                "id": integration.id,
                "name": integration.name,
                "provider": integration.provider,
                "status": integration.status.value,
                "last_sync_timestamps": integration.last_sync_timestamps or {},
            }
            for integration in integrations
        ]
    )


# Migration runs --------------------------------------------------------------------


@importer_cli.group(name="migrations")
def migrations_group():
    """Start and control migration runs."""


@migrations_group.command("start")
@click.option("--integration", "integration_id", type=int, required=True)
@click.option(
    "--type",
    "run_type",
    type=click.Choice([value.value for value in RunType]),
    default=RunType.FULL.value,
    show_default=True,
)
@click.option(
    "--phase",
    "phases",
    multiple=True,
    type=click.Choice([value.value for value in ImportPhase]),
    help="Phase to import; repeat for several. Defaults to every phase.",
)
@click.pass_context
def migrations_start(ctx, integration_id: int, run_type: str, phases: tuple[str, ...]):
    """Create a run and enqueue its first page."""
    orchestrator = _build_orchestrator(_load_app(ctx))
    try:
        run = orchestrator.start_run(integration_id, run_type=run_type, phases=phases or None)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except MigrationRunError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(orchestrator.runs.summarize(run).to_dict())


def _control(ctx, run_id: int, action: str) -> None:
    orchestrator = _build_orchestrator(_load_app(ctx))
    operation = getattr(orchestrator, f"{action}_run")
    try:
        run = operation(run_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except MigrationRunError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(orchestrator.runs.summarize(run).to_dict())


@migrations_group.command("resume")
@click.argument("run_id", type=int)
@click.pass_context
def migrations_resume(ctx, run_id: int):
    """Resume a paused run from its checkpoint."""
    _control(ctx, run_id, "resume")


@migrations_group.command("pause")
@click.argument("run_id", type=int)
@click.pass_context
def migrations_pause(ctx, run_id: int):
    _control(ctx, run_id, "pause")


@migrations_group.command("cancel")
@click.argument("run_id", type=int)
@click.pass_context
def migrations_cancel(ctx, run_id: int):
    _control(ctx, run_id, "cancel")


@migrations_group.command("status")
@click.argument("run_id", type=int, required=False)
@click.option("--integration", "integration_id", type=int, help="List recent runs for this integration.")
@click.option("--limit", default=10, show_default=True)
def migrations_status(run_id: Optional[int], integration_id: Optional[int], limit: int):
    """Show one run, or the most recent runs."""
    service = MigrationRunService()
    if run_id is not None:
        try:
            run = service.get_run(run_id)
        except NoResultFound as exc:
            raise click.ClickException(str(exc)) from exc
        _echo_json(service.summarize(run).to_dict())
        return
    runs = service.list_runs(integration_id=integration_id, limit=limit)
    _echo_json([service.summarize(run).to_dict() for run in runs])


@migrations_group.command("errors")
@click.argument("run_id", type=int)
@click.option("--phase", type=click.Choice([value.value for value in ImportPhase]))
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved errors.")
@click.option("--limit", default=50, show_default=True)
def migrations_errors(run_id: int, phase: Optional[str], include_resolved: bool, limit: int):
    """List the errors captured for a run."""
    service = MigrationRunService()
    errors = service.list_errors(run_id, phase=phase, include_resolved=include_resolved, limit=limit)
    _echo_json([error.to_dict() for error in errors])


@migrations_group.command("resolve-error")
@click.argument("error_id", type=int)
def migrations_resolve_error(error_id: int):
    """Mark an error as handled."""
    service = MigrationRunService()
    try:
        error = service.resolve_error(error_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    db.session.commit()
    _echo_json(error.to_dict())


# Lawmatics -------------------------------------------------------------------------


@importer_cli.group(name="lawmatics")
def lawmatics_group():
    """Lawmatics API utilities."""


@lawmatics_group.command("check")
@click.option("--integration", "integration_id", type=int, required=True)
@click.option("--counts/--no-counts", default=True, show_default=True, help="Also report record counts per phase.")
def lawmatics_check(integration_id: int, counts: bool):
    """Test the connection and report how much data a full migration would move."""
    integration = _get_integration(integration_id)
    try:
        client = get_client_factory()(integration)
    except LawmaticsAdapterConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    check = client.test_connection()
    payload: dict[str, object] = {"integration_id": integration.id, "connected": check.success, "error": check.error}
    integration.status = IntegrationStatus.CONNECTED if check.success else IntegrationStatus.ERROR
    integration.touch()
    db.session.commit()

    if check.success and counts:
        try:
            payload["counts"] = client.get_entity_counts()
        except LawmaticsClientError as exc:
            payload["counts_error"] = str(exc)
    _echo_json(payload)
    if not check.success:
        raise click.ClickException(f"Lawmatics connection failed: {check.error}")
