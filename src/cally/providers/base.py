"""Shared request plumbing for bearer-token REST clients.

Every request is a single attempt.  Non-2xx responses are mapped onto the
error taxonomy: 401 → reconnect, 403 → fix permissions, 404 → not found,
anything else (and any transport error) → transient.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from cally.credentials.models import AccessToken
from cally.errors import (
    AuthenticationRequiredError,
    PermissionDeniedError,
    RemoteNotFoundError,
    TransientFailureError,
    truncate_remote_message,
)

logger = logging.getLogger(__name__)


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, display-safe error message from an API error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return truncate_remote_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            return truncate_remote_message(error_payload)
        # Atlassian shape: {"errorMessages": [...], "errors": {...}}
        error_messages = payload.get("errorMessages")
        if isinstance(error_messages, list):
            joined = "; ".join(str(item) for item in error_messages if item)
            if joined.strip():
                return truncate_remote_message(joined)
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return truncate_remote_message(message)

    raw_text = response.text.strip()
    if raw_text:
        return truncate_remote_message(raw_text)
    return "Request failed without an error payload"


def raise_for_remote_status(
    response: httpx.Response,
    *,
    token: AccessToken,
    resource: str,
) -> None:
    """Raise the typed error matching a non-2xx *response*; return on success."""
    status = response.status_code
    if 200 <= status < 300:
        return

    message = safe_error_message(response)
    provider = token.provider.value
    if status == 401:
        raise AuthenticationRequiredError(
            f"{provider} rejected the access token for {resource}: {message}",
            provider=provider,
            account_id=token.account_id,
            reason="token_rejected",
        )
    if status == 403:
        raise PermissionDeniedError(
            f"Insufficient permissions for {resource}: {message}",
            provider=provider,
            account_id=token.account_id,
        )
    if status == 404:
        raise RemoteNotFoundError(f"{resource} not found: {message}", provider=provider)
    raise TransientFailureError(
        f"{provider} request for {resource} failed ({status}): {message}",
        status_code=status,
        provider=provider,
    )


class BearerApiClient:
    """Base class for REST clients authenticated with one :class:`AccessToken`."""

    base_url: str = ""

    def __init__(self, http_client: httpx.AsyncClient, token: AccessToken) -> None:
        self._http_client = http_client
        self._token = token

    @property
    def token(self) -> AccessToken:
        return self._token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self.base_url}{normalized_path}"
        headers = {"Accept": "application/json", **self._token.authorization_header}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise TransientFailureError(
                f"{self._token.provider} request {method} {normalized_path} failed: "
                f"{type(exc).__name__}",
                provider=self._token.provider.value,
            ) from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        resource: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        response = await self._request(method, path, params=params, json_body=json_body)
        raise_for_remote_status(response, token=self._token, resource=resource)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise TransientFailureError(
                f"{self._token.provider} returned invalid JSON for {resource}"
            ) from exc
