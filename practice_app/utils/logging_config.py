"""
Application logging setup.

``setup_logging`` attaches console and rotating file handlers to the Flask
app logger and to the ``practice_app`` package logger, which every importer
module logs through via ``logging.getLogger(__name__)``. ``LOG_FORMAT=json``
emits one JSON object per line, including any ``extra={...}`` fields such as
``importer_run_id``.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask
from pythonjsonlogger.json import JsonFormatter

PACKAGE_LOGGER = "practice_app"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Marks handlers installed here so repeated setup (tests) replaces rather than stacks them.
_HANDLER_MARKER = "_practice_app_handler"


def _build_formatter(app: Flask) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return JsonFormatter(
            fmt=JSON_FORMAT,
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"app": app.config.get("APP_NAME", "practice-migrations")},
        )
    return logging.Formatter(TEXT_FORMAT)


def _build_handlers(app: Flask) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, "application.log"),
                maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            )
        )
    return handlers


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app: Flask) -> None:
    """Configure the app and package loggers from ``LOG_*`` settings. Safe to call repeatedly."""
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app)
    handlers = _build_handlers(app)

    for logger in (app.logger, logging.getLogger(PACKAGE_LOGGER)):
        _reset_handlers(logger)
        logger.setLevel(level)
        for handler in handlers:
            handler.setFormatter(formatter)
            setattr(handler, _HANDLER_MARKER, True)
            logger.addHandler(handler)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    # The package logger has its own handlers; stop records reaching root twice.
    package_logger.propagate = not handlers

    app.logger.debug(
        "Logging configured",
        extra={"log_level": level_name, "log_format": app.config.get("LOG_FORMAT"), "log_handlers": len(handlers)},
    )

