"""Lawmatics adapter configuration, credential resolution and error types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Mapping, Tuple

from flask import current_app

if TYPE_CHECKING:  # pragma: no cover
    from practice_app.models.importer import Integration

REQUIRED_CONFIG_KEYS: Tuple[str, ...] = ("LAWMATICS_API_BASE_URL",)

CredentialResolver = Callable[["Integration"], "str | None"]


class LawmaticsClientError(RuntimeError):
    """Base error for Lawmatics API failures."""


class RateLimitError(LawmaticsClientError):
    """Raised on HTTP 429. The page should be retried later, not treated as empty."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class LawmaticsApiError(LawmaticsClientError):
    """Raised for any non-2xx response other than 429."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def as_dict(self) -> dict[str, object]:
        return {"message": str(self), "status_code": self.status_code, "body": self.body}


class LawmaticsTransportError(LawmaticsApiError):
    """Raised when the request never produced an HTTP response."""


class LawmaticsAdapterConfigError(LawmaticsClientError):
    """Raised when the adapter cannot build an authenticated client."""


@dataclass(frozen=True)
class LawmaticsAdapterReadiness:
    missing_config: Tuple[str, ...]
    has_default_token: bool
    custom_resolver: bool

    @property
    def status(self) -> str:
        if self.missing_config:
            return "missing-config"
        if not self.has_default_token and not self.custom_resolver:
            return "missing-credentials"
        return "ready"

    def as_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "missing_config": list(self.missing_config),
            "has_default_token": self.has_default_token,
            "custom_resolver": self.custom_resolver,
        }


def check_lawmatics_adapter_readiness(config: Mapping[str, object] | None = None) -> LawmaticsAdapterReadiness:
    """Non-raising readiness check against the Flask config."""
    config = config if config is not None else current_app.config
    missing = tuple(key for key in REQUIRED_CONFIG_KEYS if not config.get(key))
    state = current_app.extensions.get("importer", {}) if config is current_app.config else {}
    return LawmaticsAdapterReadiness(
        missing_config=missing,
        has_default_token=bool(config.get("LAWMATICS_ACCESS_TOKEN")),
        custom_resolver=state.get("credential_resolver") is not None,
    )


def default_credential_resolver(integration: "Integration") -> str | None:
    """Resolve the token from app config. Deployments register a store-backed resolver instead."""
    return current_app.config.get("LAWMATICS_ACCESS_TOKEN")


def register_credential_resolver(app, resolver: CredentialResolver) -> None:
    state = app.extensions.setdefault("importer", {})
    state["credential_resolver"] = resolver


def resolve_access_token(integration: "Integration") -> str:
    """Return a ready-to-use access token for the integration or raise."""
    state = current_app.extensions.get("importer", {})
    resolver: CredentialResolver = state.get("credential_resolver") or default_credential_resolver
    token = resolver(integration)
    if not token:
        raise LawmaticsAdapterConfigError(
            f"No Lawmatics access token available for integration {integration.id} "
            f"(credentials key {integration.credentials_key!r})."
        )
    return token


__all__ = [
    "CredentialResolver",
    "LawmaticsAdapterConfigError",
    "LawmaticsAdapterReadiness",
    "LawmaticsApiError",
    "LawmaticsClientError",
    "LawmaticsTransportError",
    "RateLimitError",
    "check_lawmatics_adapter_readiness",
    "default_credential_resolver",
    "register_credential_resolver",
    "resolve_access_token",
]
