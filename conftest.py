# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py loads TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from practice_app.models import Integration, IntegrationStatus, User, UserRole, UserStatus, db  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Flask application backed by a fresh in-memory schema for each test"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "LOG_LEVEL": "DEBUG",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "IMPORTER_ENABLED": False,
            "IMPORTER_WORKER_ENABLED": False,
            "LAWMATICS_API_BASE_URL": "https://lawmatics.test/v1",
            "LAWMATICS_ACCESS_TOKEN": "test-token",
        }
    )

    from practice_app.utils.logging_config import setup_logging

    setup_logging(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    # Extension state is per-test; drop anything a test registered.
    state = flask_app.extensions.get("importer")
    if state is not None:
        state["client_factory"] = None
        state["credential_resolver"] = None


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def integration(app):
    """A configured Lawmatics integration"""
    record = Integration(name="Lawmatics (test)", credentials_key="lawmatics/test", status=IntegrationStatus.CONFIGURED)
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def staff_user(app):
    """A native staff user, used as the default author for imported notes"""
    user = User(
        email="admin@lawfirm.com",
        first_name="Ada",
        last_name="Admin",
        role=UserRole.ADMIN,
        status=UserStatus.ACTIVE,
    )
    db.session.add(user)
    db.session.commit()
    return user


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: tests that run the full orchestrator against the database")
