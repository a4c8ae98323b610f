"""Typed error taxonomy shared by every Cally component.

Each error carries a ``signal`` that the consuming layer maps to a user
affordance (``reconnect``, ``fix_permissions``, ``retry`` ...) and a
suggested HTTP status so nothing collapses into a generic 500.
"""

from __future__ import annotations

import re
from typing import Any

_REMOTE_MESSAGE_LIMIT = 200

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
    re.compile(r"((?:access_token|refresh_token|client_secret)[\"']?\s*[=:]\s*[\"']?)[^\s\"'&,}]+"),
)


def redact_secrets(message: str) -> str:
    """Mask bearer tokens and OAuth secret values embedded in *message*."""
    redacted = message
    for pattern in _SECRET_PATTERNS:
        redacted = pattern.sub(r"\1[REDACTED]", redacted)
    return redacted


def truncate_remote_message(message: str) -> str:
    """Redact, collapse whitespace and cap a remote error body for display."""
    collapsed = " ".join(redact_secrets(message).split())
    return collapsed[:_REMOTE_MESSAGE_LIMIT]


class CallyError(RuntimeError):
    """Base class for every typed failure surfaced by Cally."""

    signal = "error"
    http_status = 500

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}
        super().__init__(message)


class AuthenticationRequiredError(CallyError):
    """The credential is missing or unrecoverable; the user must reconnect.

    ``reason`` is a stable code such as ``not_connected``,
    ``refresh_token_invalid``, ``invalid_grant`` or ``missing_refresh_token``.
    """

    signal = "reconnect"
    http_status = 401

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        account_id: str | None = None,
        reason: str = "not_connected",
    ) -> None:
        self.provider = provider
        self.account_id = account_id
        self.reason = reason
        super().__init__(message, provider=provider, account_id=account_id, reason=reason)


class PermissionDeniedError(CallyError):
    """The remote API refused the request for lack of rights or scope."""

    signal = "fix_permissions"
    http_status = 403


class RemoteNotFoundError(CallyError):
    """The referenced remote entity no longer exists."""

    signal = "not_found"
    http_status = 404


class TransientFailureError(CallyError):
    """Network or remote failure that may succeed if attempted again later."""

    signal = "retry"
    http_status = 502

    def __init__(self, message: str, *, status_code: int | None = None, **context: Any) -> None:
        self.status_code = status_code
        super().__init__(message, status_code=status_code, **context)


class InvalidInputError(CallyError):
    """Caller-supplied input is structurally invalid."""

    signal = "invalid_request"
    http_status = 422


class EventNotFoundError(InvalidInputError):
    """A local event id does not resolve to a cached event for the user."""

    signal = "not_found"
    http_status = 404


class SessionNotFoundError(InvalidInputError):
    """A task session id does not resolve to a session owned by the user."""

    signal = "not_found"
    http_status = 404


class AccountNotFoundError(InvalidInputError):
    """A credential id does not belong to the user."""

    signal = "not_found"
    http_status = 404


class StateConflictError(CallyError):
    """An operation was attempted against a record in the wrong state."""

    signal = "conflict"
    http_status = 409


class ConcurrentUpdateError(StateConflictError):
    """A conditional write lost to a concurrent writer.

    Attributes:
        key: Identifier of the contested record.
        expected_version: The version the caller read the record at.
        actual_version: The version found in storage (None if the row vanished).
    """

    def __init__(self, key: str, expected_version: int, actual_version: int | None) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Concurrent update on {key!r}: expected version {expected_version}, "
            f"got {actual_version!r}",
            key=key,
        )


def error_payload(exc: CallyError) -> dict[str, Any]:
    """Render *exc* as a JSON-safe dict for the consuming web layer."""
    payload: dict[str, Any] = {
        "error": type(exc).__name__,
        "signal": exc.signal,
        "status": exc.http_status,
        "message": redact_secrets(exc.message),
    }
    for key, value in exc.context.items():
        payload.setdefault(key, value if isinstance(value, str | int | bool) else str(value))
    return payload
