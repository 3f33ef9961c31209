"""
Lawmatics migration engine.

``init_importer`` wires the engine into a Flask app: it records importer state
inside ``app.extensions['importer']``, builds the Celery app, checks Lawmatics
adapter readiness and registers the ``flask importer`` CLI group. When the
importer is disabled only a stub CLI group is registered.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping

from flask import Flask

from practice_app.utils.importer import is_importer_enabled, is_worker_enabled

from .adapters.lawmatics import check_lawmatics_adapter_readiness, register_credential_resolver
from .adapters.lawmatics.client import get_client_factory
from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .metrics import record_lawmatics_adapter_status
from .pipeline.orchestrator import MigrationOrchestrator
from .pipeline.run_service import MigrationRunService

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "get_client_factory",
    "register_client_factory",
    "register_credential_resolver",
    "MigrationOrchestrator",
    "MigrationRunService",
    "get_adapter_readiness",
    "refresh_adapter_readiness",
]

_DEFAULT_STATE: Dict[str, Any] = {
    "enabled": False,
    "worker_enabled": False,
    "celery_app": None,
    "client_factory": None,
    "credential_resolver": None,
    "adapter_readiness": {},
}


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(IMPORTER_EXTENSION_KEY, {})
    for key, default in _DEFAULT_STATE.items():
        state.setdefault(key, dict(default) if isinstance(default, dict) else default)
    return state


def register_client_factory(app: Flask, factory: Callable | None) -> None:
    """Override how Lawmatics clients are built (tests, alternate credential stores)."""
    _ensure_extension_state(app)["client_factory"] = factory


def _compute_adapter_readiness(app: Flask) -> Dict[str, Any]:
    with app.app_context():
        readiness = check_lawmatics_adapter_readiness(app.config)
    payload = readiness.as_dict()
    record_lawmatics_adapter_status(readiness.status == "ready")
    return payload


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally build the importer Celery app and CLI based on configuration.
    """
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": is_worker_enabled(app)})

    if not enabled:
        record_lawmatics_adapter_status(False)
        state["adapter_readiness"] = {}
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)

    readiness = _compute_adapter_readiness(app)
    state["adapter_readiness"] = readiness
    if readiness["status"] != "ready":
        app.logger.warning(
            "Lawmatics adapter not ready (status=%s)",
            readiness["status"],
            extra={
                "importer_adapter_status": readiness["status"],
                "importer_adapter_missing_config": readiness["missing_config"],
            },
        )

    _set_cli(app, enabled=True)
    app.logger.info("Importer enabled (worker_enabled=%s)", state["worker_enabled"])


def get_adapter_readiness(app: Flask) -> Mapping[str, Any]:
    """
    Return cached Lawmatics adapter readiness for the importer extension.
    """
    state = _ensure_extension_state(app)
    return dict(state.get("adapter_readiness", {}))


def refresh_adapter_readiness(app: Flask) -> Mapping[str, Any]:
    """
    Recompute readiness, e.g. after registering a credential resolver.
    """
    state = _ensure_extension_state(app)
    state["adapter_readiness"] = _compute_adapter_readiness(app)
    return dict(state["adapter_readiness"])
