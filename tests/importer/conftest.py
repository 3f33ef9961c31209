from __future__ import annotations

import pytest
import requests
from importer_fakes import FIXED_NOW, FakeSession, RecordingQueue, build_client

from practice_app.importer.pipeline.caches import CacheRegistry
from practice_app.importer.pipeline.orchestrator import MigrationOrchestrator


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def recording_queue():
    return RecordingQueue()


@pytest.fixture
def orchestrator_factory(app, fake_session):
    """Build orchestrators backed by the fake Lawmatics session and a fixed clock."""

    def _factory(queue=None, *, session=None):
        http = session or fake_session
        return MigrationOrchestrator(
            queue if queue is not None else RecordingQueue(),
            lambda integration: build_client(http),
            caches=CacheRegistry(),
            clock=lambda: FIXED_NOW,
        )

    return _factory


@pytest.fixture
def transport_error():
    return requests.ConnectionError("connection reset by peer")
