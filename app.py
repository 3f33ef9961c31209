# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from practice_app.importer import init_importer  # noqa: E402
from practice_app.models import db  # noqa: E402
from practice_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

# FLASK_ENV -> (application config, logging config)
ENVIRONMENTS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

SQLITE_PRAGMAS = ("journal_mode=WAL", "synchronous=NORMAL", "busy_timeout=5000")


def _sqlite_pragma_hook(*, enable_foreign_keys: bool):
    """Connection hook so the web process and Celery workers can share one SQLite file."""
    pragmas = SQLITE_PRAGMAS + (("foreign_keys=ON",) if enable_foreign_keys else ())

    def _apply_pragmas(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            for pragma in pragmas:
                cursor.execute(f"PRAGMA {pragma}")
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        finally:
            cursor.close()

    return _apply_pragmas


def _configure_database(app: Flask) -> None:
    with app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite") and not getattr(engine, "_sqlite_pragmas_configured", False):
            event.listen(engine, "connect", _sqlite_pragma_hook(enable_foreign_keys=not app.config.get("TESTING", False)))
            engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]
        # Tests build and drop their own schema.
        if not app.config.get("TESTING", False):
            db.create_all()


flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
for config_object in ENVIRONMENTS.get(flask_env, ENVIRONMENTS["development"]):
    app.config.from_object(config_object)

db.init_app(app)
setup_logging(app)
_configure_database(app)

# Worker processes load this module too; the importer registers its Celery app and CLI here.
init_importer(app)
