from __future__ import annotations

from datetime import datetime, timezone

import pytest
from importer_fakes import FakeResponse, FakeSession, build_client, lawmatics_page, user_record

from practice_app.importer.adapters.lawmatics import (
    LawmaticsAdapterConfigError,
    LawmaticsApiError,
    LawmaticsTransportError,
    RateLimitError,
    check_lawmatics_adapter_readiness,
    register_credential_resolver,
    resolve_access_token,
)
from practice_app.importer.adapters.lawmatics.client import (
    LawmaticsClient,
    create_lawmatics_client,
    format_updated_since,
    normalize_pagination,
    parse_retry_after,
)
from practice_app.models import ImportPhase


def test_fetch_phase_page_uses_endpoint_and_page_size():
    session = FakeSession()
    session.add("/users", lawmatics_page([user_record("1", "a@lawfirm.com")], page=1, total_pages=3))
    client = build_client(session)

    result = client.fetch_phase_page(ImportPhase.USERS, page=1)

    assert [record["id"] for record in result.records] == ["1"]
    assert result.has_more is True
    call = session.calls[0]
    assert call["url"] == "https://lawmatics.test/v1/users"
    assert call["params"] == {"fields": "all", "page": 1, "per_page": 100}
    assert call["headers"]["Authorization"] == "Bearer test-token"


def test_activities_use_timeline_endpoint_and_smaller_pages():
    session = FakeSession()
    client = build_client(session)

    client.fetch_phase_page(ImportPhase.ACTIVITIES, page=2)

    call = session.calls[0]
    assert call["url"].endswith("/timeline")
    assert call["params"]["per_page"] == 25
    assert call["params"]["page"] == 2


def test_empty_page_never_reports_more():
    session = FakeSession()
    session.add("/contacts", lawmatics_page([], page=1, total_pages=4))
    client = build_client(session)

    result = client.fetch_phase_page(ImportPhase.CONTACTS)

    assert result.records == []
    assert result.has_more is False


def test_last_page_reports_no_more():
    pagination = normalize_pagination(
        lawmatics_page([{"id": "9"}], page=2, total_pages=2), page=2, per_page=100, record_count=1
    )
    assert pagination.has_more is False
    assert pagination.current_page == 2


def test_missing_pagination_is_treated_as_single_page():
    pagination = normalize_pagination({"data": [{"id": "1"}, {"id": "2"}]}, page=1, per_page=100, record_count=2)

    assert pagination.to_dict() == {
        "current_page": 1,
        "total_pages": 1,
        "total_count": 2,
        "per_page": 100,
        "has_more": False,
    }


def test_updated_since_adds_filter_params():
    session = FakeSession()
    client = build_client(session)

    client.fetch_phase_page(
        ImportPhase.NOTES,
        updated_since=datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc),
    )

    params = session.calls[0]["params"]
    assert params["filter_by"] == "updated_at"
    assert params["filter_op"] == "gt"
    assert params["filter_on"] == "2024-05-01T08:30:00Z"


def test_full_fetch_sends_no_filter():
    session = FakeSession()
    build_client(session).fetch_phase_page(ImportPhase.NOTES, updated_since=None)

    assert "filter_by" not in session.calls[0]["params"]


def test_format_updated_since_passes_strings_through():
    assert format_updated_since("2024-05-01T00:00:00+00:00") == "2024-05-01T00:00:00+00:00"
    assert format_updated_since(datetime(2024, 5, 1)) == "2024-05-01T00:00:00Z"


def test_rate_limit_raises_with_retry_after_seconds():
    session = FakeSession()
    session.add("/users", FakeResponse(429, {"error": "slow down"}, headers={"Retry-After": "7"}))

    with pytest.raises(RateLimitError) as excinfo:
        build_client(session).fetch_phase_page(ImportPhase.USERS)

    assert excinfo.value.retry_after == 7.0


def test_parse_retry_after_accepts_http_dates():
    now = datetime(2015, 10, 21, 7, 27, 0, tzinfo=timezone.utc)

    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=now) == 60.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:00:00 GMT", now=now) == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
    assert parse_retry_after("  ") is None


def test_http_error_raises_api_error_with_body():
    session = FakeSession()
    session.add("/prospects", FakeResponse(500, text="upstream exploded"))

    with pytest.raises(LawmaticsApiError) as excinfo:
        build_client(session).fetch_phase_page(ImportPhase.PROSPECTS)

    assert excinfo.value.status_code == 500
    assert excinfo.value.body == "upstream exploded"
    assert excinfo.value.as_dict()["status_code"] == 500


def test_transport_failure_raises_transport_error(transport_error):
    session = FakeSession()
    session.add("/users", transport_error)

    with pytest.raises(LawmaticsTransportError) as excinfo:
        build_client(session).fetch_phase_page(ImportPhase.USERS)

    assert excinfo.value.status_code is None
    assert isinstance(excinfo.value, LawmaticsApiError)


def test_non_json_body_is_an_api_error():
    session = FakeSession()
    session.add("/users", FakeResponse(200, None, text="<html>maintenance</html>"))

    with pytest.raises(LawmaticsApiError, match="non-JSON"):
        build_client(session).fetch_phase_page(ImportPhase.USERS)


def test_fetch_all_walks_every_page():
    session = FakeSession()
    session.add(
        "/contacts",
        lawmatics_page([{"id": "1"}, {"id": "2"}], page=1, total_pages=2),
        lawmatics_page([{"id": "3"}], page=2, total_pages=2),
    )
    client = build_client(session)

    ids = [record["id"] for record in client.fetch_all("/contacts")]

    assert ids == ["1", "2", "3"]
    assert [call["params"]["page"] for call in session.calls] == [1, 2]


def test_fetch_all_respects_max_pages():
    session = FakeSession()
    session.add(
        "/contacts",
        lawmatics_page([{"id": "1"}], page=1, total_pages=5),
        lawmatics_page([{"id": "2"}], page=2, total_pages=5),
    )

    ids = [record["id"] for record in build_client(session).fetch_all("/contacts", max_pages=1)]

    assert ids == ["1"]


def test_non_mapping_records_are_dropped():
    session = FakeSession()
    session.add("/notes", lawmatics_page([{"id": "1"}, "junk", None]))

    result = build_client(session).fetch_phase_page(ImportPhase.NOTES)

    assert [record["id"] for record in result.records] == ["1"]


def test_test_connection_reports_success_and_failure():
    ok_session = FakeSession()
    assert build_client(ok_session).test_connection().success is True
    assert ok_session.calls[0]["params"]["per_page"] == 1

    bad_session = FakeSession()
    bad_session.add("/users", FakeResponse(401, {"error": "unauthorized"}))
    check = build_client(bad_session).test_connection()

    assert check.success is False
    assert "401" in check.error


def test_get_entity_counts_reads_total_count_per_phase():
    session = FakeSession()
    session.add("/users", lawmatics_page([{"id": "1"}], total_count=4))
    session.add("/contacts", lawmatics_page([{"id": "1"}], total_count=250))
    session.add("/timeline", lawmatics_page([{"id": "1"}], total_count=1200))

    counts = build_client(session).get_entity_counts()

    assert counts == {"users": 4, "contacts": 250, "prospects": 0, "notes": 0, "activities": 1200}


def test_client_requires_access_token():
    with pytest.raises(ValueError):
        LawmaticsClient(access_token="")


def test_create_client_reads_app_config(app, integration):
    client = create_lawmatics_client(integration)

    assert client.base_url == "https://lawmatics.test/v1"
    assert client._auth_headers["Authorization"] == "Bearer test-token"


def test_create_client_without_token_raises(app, integration, monkeypatch):
    monkeypatch.setitem(app.config, "LAWMATICS_ACCESS_TOKEN", None)

    with pytest.raises(LawmaticsAdapterConfigError, match="lawmatics/test"):
        create_lawmatics_client(integration)


def test_registered_credential_resolver_wins(app, integration):
    register_credential_resolver(app, lambda record: f"vault-token-for-{record.credentials_key}")

    assert resolve_access_token(integration) == "vault-token-for-lawmatics/test"


def test_adapter_readiness_states(app, monkeypatch):
    assert check_lawmatics_adapter_readiness().status == "ready"

    missing_config = check_lawmatics_adapter_readiness({"LAWMATICS_ACCESS_TOKEN": "t"})
    assert missing_config.status == "missing-config"
    assert missing_config.as_dict()["missing_config"] == ["LAWMATICS_API_BASE_URL"]

    monkeypatch.setitem(app.config, "LAWMATICS_ACCESS_TOKEN", None)
    assert check_lawmatics_adapter_readiness().status == "missing-credentials"

    register_credential_resolver(app, lambda record: "from-store")
    assert check_lawmatics_adapter_readiness().status == "ready"
