"""
Lawmatics REST API client.

Paginated, bearer-authenticated GET access to the Lawmatics v1 API. Every
response is normalized into a ``PageResult`` and every failure is classified
as a rate limit, an API error or a transport error so the orchestrator can
decide between retrying the page and failing the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from types import MappingProxyType
from typing import Any, Iterator, List, Mapping

import requests

from practice_app.importer.adapters.lawmatics import (
    LawmaticsApiError,
    LawmaticsClientError,
    LawmaticsTransportError,
    RateLimitError,
    resolve_access_token,
)
from practice_app.importer.metrics import record_lawmatics_request
from practice_app.models.importer import DEFAULT_PAGE_SIZE, PAGE_SIZES, ImportPhase, Integration

DEFAULT_BASE_URL = "https://api.lawmatics.com/v1"
DEFAULT_TIMEOUT = 30.0

ENDPOINTS: Mapping[ImportPhase, str] = MappingProxyType(
    {
        ImportPhase.USERS: "/users",
        ImportPhase.CONTACTS: "/contacts",
        ImportPhase.PROSPECTS: "/prospects",
        ImportPhase.NOTES: "/notes",
        ImportPhase.ACTIVITIES: "/timeline",
    }
)


@dataclass(frozen=True)
class Pagination:
    current_page: int
    total_pages: int
    total_count: int
    per_page: int
    has_more: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "total_count": self.total_count,
            "per_page": self.per_page,
            "has_more": self.has_more,
        }


@dataclass(frozen=True)
class PageResult:
    records: List[Mapping[str, Any]]
    pagination: Pagination

    @property
    def has_more(self) -> bool:
        return self.pagination.has_more


@dataclass(frozen=True)
class ConnectionCheck:
    success: bool
    error: str | None = None


def _as_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def normalize_pagination(payload: Mapping[str, Any], *, page: int, per_page: int, record_count: int) -> Pagination:
    """Normalize ``meta.pagination``; a response without it is treated as a single page."""
    meta = payload.get("meta") if isinstance(payload, Mapping) else None
    raw = meta.get("pagination") if isinstance(meta, Mapping) else None
    if not isinstance(raw, Mapping):
        raw = {}
    current_page = _as_int(raw.get("current_page"), page)
    total_pages = _as_int(raw.get("total_pages"), 1)
    total_count = _as_int(raw.get("total_count"), record_count)
    page_size = _as_int(raw.get("per_page"), per_page)
    return Pagination(
        current_page=current_page,
        total_pages=total_pages,
        total_count=total_count,
        per_page=page_size,
        has_more=current_page < total_pages and record_count > 0,
    )


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given as delta-seconds or an HTTP date."""
    if value is None:
        return None
    token = str(value).strip()
    if not token:
        return None
    try:
        return max(0.0, float(token))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(token)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - reference).total_seconds())


def format_updated_since(value: datetime | str) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return str(value)


class LawmaticsClient:
    """Thin, stateless wrapper over ``requests.Session`` for the Lawmatics API."""

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self._auth_headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    # Public API -----------------------------------------------------------------

    def fetch_page(
        self,
        endpoint: str,
        *,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
        updated_since: datetime | str | None = None,
    ) -> PageResult:
        """Fetch one page of ``endpoint`` and normalize its pagination metadata."""
        params: dict[str, object] = {"fields": "all", "page": page, "per_page": per_page}
        if updated_since:
            params.update(
                {
                    "filter_by": "updated_at",
                    "filter_op": "gt",
                    "filter_on": format_updated_since(updated_since),
                }
            )
        payload = self._get(endpoint, params)
        data = payload.get("data") if isinstance(payload, Mapping) else None
        records = [record for record in data if isinstance(record, Mapping)] if isinstance(data, list) else []
        pagination = normalize_pagination(payload, page=page, per_page=per_page, record_count=len(records))
        self.logger.debug(
            "Lawmatics page fetched",
            extra={
                "lawmatics_endpoint": endpoint,
                "lawmatics_page": page,
                "lawmatics_records": len(records),
                "lawmatics_has_more": pagination.has_more,
            },
        )
        return PageResult(records=records, pagination=pagination)

    def fetch_phase_page(
        self,
        phase: ImportPhase,
        *,
        page: int = 1,
        per_page: int | None = None,
        updated_since: datetime | str | None = None,
    ) -> PageResult:
        return self.fetch_page(
            ENDPOINTS[phase],
            page=page,
            per_page=per_page or PAGE_SIZES[phase],
            updated_since=updated_since,
        )

    def fetch_all(
        self,
        endpoint: str,
        *,
        per_page: int = DEFAULT_PAGE_SIZE,
        updated_since: datetime | str | None = None,
        max_pages: int | None = None,
    ) -> Iterator[Mapping[str, Any]]:
        """Yield every record of ``endpoint``, page by page."""
        page = 1
        while True:
            result = self.fetch_page(endpoint, page=page, per_page=per_page, updated_since=updated_since)
            yield from result.records
            if not result.has_more or (max_pages is not None and page >= max_pages):
                return
            page += 1

    def test_connection(self) -> ConnectionCheck:
        try:
            self.fetch_page(ENDPOINTS[ImportPhase.USERS], page=1, per_page=1)
        except LawmaticsClientError as exc:
            return ConnectionCheck(success=False, error=str(exc))
        return ConnectionCheck(success=True)

    def get_entity_counts(self) -> dict[str, int]:
        """Total record count per phase, as reported by the API."""
        counts: dict[str, int] = {}
        for phase, endpoint in ENDPOINTS.items():
            result = self.fetch_page(endpoint, page=1, per_page=1)
            counts[phase.value] = result.pagination.total_count
        return counts

    # Internal helpers -----------------------------------------------------------

    def _get(self, endpoint: str, params: Mapping[str, object]) -> Mapping[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            response = self.session.get(url, headers=self._auth_headers, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            record_lawmatics_request("transport_error")
            raise LawmaticsTransportError(f"Lawmatics request to {endpoint} failed: {exc}") from exc

        if response.status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            record_lawmatics_request("rate_limited")
            self.logger.warning(
                "Lawmatics rate limit hit",
                extra={"lawmatics_endpoint": endpoint, "lawmatics_retry_after": retry_after},
            )
            raise RateLimitError(f"Lawmatics rate limit exceeded for {endpoint}", retry_after=retry_after)

        if not 200 <= response.status_code < 300:
            body = response.text
            record_lawmatics_request("api_error")
            self.logger.error(
                "Lawmatics request failed",
                extra={
                    "lawmatics_endpoint": endpoint,
                    "lawmatics_status_code": response.status_code,
                    "lawmatics_body": body[:2000] if body else body,
                },
            )
            raise LawmaticsApiError(
                f"Lawmatics API error {response.status_code} for {endpoint}",
                status_code=response.status_code,
                body=body,
            )

        record_lawmatics_request("success")
        try:
            return response.json()
        except ValueError as exc:
            raise LawmaticsApiError(
                f"Lawmatics returned a non-JSON body for {endpoint}",
                status_code=response.status_code,
                body=response.text,
            ) from exc


def create_lawmatics_client(integration: Integration) -> LawmaticsClient:
    """Build an authenticated client for ``integration`` using the registered credential resolver."""
    from flask import current_app

    return LawmaticsClient(
        access_token=resolve_access_token(integration),
        base_url=current_app.config.get("LAWMATICS_API_BASE_URL") or DEFAULT_BASE_URL,
        timeout=float(current_app.config.get("LAWMATICS_REQUEST_TIMEOUT") or DEFAULT_TIMEOUT),
        logger=current_app.logger,
    )


def get_client_factory(app=None):
    """Client factory registered on the importer extension, or ``create_lawmatics_client``."""
    from flask import current_app

    app = app or current_app
    state = app.extensions.get("importer") or {}
    return state.get("client_factory") or create_lawmatics_client
