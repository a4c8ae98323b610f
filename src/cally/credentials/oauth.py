"""OAuth 2.0 token endpoint client (form-encoded grant protocol)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

import httpx

from cally.clock import Clock, utc_now
from cally.config import OAuthProviderConfig
from cally.credentials.models import InvalidationReason, Provider, TokenGrant
from cally.errors import (
    AuthenticationRequiredError,
    TransientFailureError,
    truncate_remote_message,
)

logger = logging.getLogger(__name__)

# Token endpoint statuses that mean the grant itself is unusable.
_REJECTED_STATUS_CODES = frozenset({400, 401})


class TokenRejectedError(AuthenticationRequiredError):
    """The token endpoint rejected the grant; the credential cannot be refreshed."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int,
        error_code: str | None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        reason = (
            InvalidationReason.INVALID_GRANT
            if error_code == "invalid_grant"
            else InvalidationReason.REFRESH_TOKEN_INVALID
        )
        super().__init__(message, provider=provider, reason=reason.value)


def _coerce_expires_in_seconds(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        seconds = int(value.strip())
        return seconds if seconds > 0 else None
    return None


def _error_fields(response: httpx.Response) -> tuple[str | None, str]:
    """Return ``(error_code, safe_message)`` from a token endpoint error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    error_code: str | None = None
    message: str | None = None
    if isinstance(payload, dict):
        raw_error = payload.get("error")
        if isinstance(raw_error, str) and raw_error.strip():
            error_code = raw_error.strip()
        raw_description = payload.get("error_description")
        if isinstance(raw_description, str) and raw_description.strip():
            message = raw_description
        elif error_code is not None:
            message = error_code

    if message is None:
        message = response.text.strip() or "Token request failed without an error payload"
    return error_code, truncate_remote_message(message)


class OAuthTokenClient:
    """Exchanges authorization codes and refresh tokens for access tokens.

    Every call is a single attempt; callers decide what a failure means.
    """

    def __init__(
        self,
        provider: Provider,
        config: OAuthProviderConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._provider = provider
        self._config = config
        self._http_client = http_client
        self._clock = clock

    @property
    def provider(self) -> Provider:
        return self._provider

    async def exchange_code(self, code: str, *, redirect_uri: str | None = None) -> TokenGrant:
        """Exchange an authorization code from the consent redirect."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }
        resolved_redirect = redirect_uri or self._config.redirect_uri
        if resolved_redirect:
            data["redirect_uri"] = resolved_redirect
        return await self._request_grant(data)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange *refresh_token* for a new access token.

        Raises
        ------
        TokenRejectedError
            The endpoint answered 400/401, or 403 with ``invalid_grant``.
        TransientFailureError
            Transport failure, any other status, or a malformed success body.
        """
        return await self._request_grant(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
            }
        )

    async def _request_grant(self, data: dict[str, str]) -> TokenGrant:
        grant_type = data["grant_type"]
        try:
            response = await self._http_client.post(
                self._config.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransientFailureError(
                f"{self._provider} token request failed: {type(exc).__name__}",
                provider=self._provider.value,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code, message = _error_fields(response)
            rejected = response.status_code in _REJECTED_STATUS_CODES or (
                response.status_code == 403 and error_code == "invalid_grant"
            )
            logger.warning(
                "%s token endpoint returned %d for %s grant (error=%s)",
                self._provider,
                response.status_code,
                grant_type,
                error_code,
            )
            if rejected:
                raise TokenRejectedError(
                    f"{self._provider} rejected the {grant_type} grant "
                    f"({response.status_code}): {message}",
                    provider=self._provider.value,
                    status_code=response.status_code,
                    error_code=error_code,
                )
            raise TransientFailureError(
                f"{self._provider} token endpoint failed ({response.status_code}): {message}",
                status_code=response.status_code,
                provider=self._provider.value,
            )

        return self._parse_grant(response)

    def _parse_grant(self, response: httpx.Response) -> TokenGrant:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientFailureError(
                f"{self._provider} token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TransientFailureError(
                f"{self._provider} token response is missing a non-empty access_token"
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        expires_at: datetime | None = None
        if expires_in is not None:
            expires_at = self._clock() + timedelta(seconds=expires_in)

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        token_type = payload.get("token_type")
        return TokenGrant(
            access_token=access_token.strip(),
            refresh_token=refresh_token.strip()
            if isinstance(refresh_token, str) and refresh_token.strip()
            else None,
            expires_at=expires_at,
            scope=scope if isinstance(scope, str) and scope else None,
            token_type=token_type if isinstance(token_type, str) else None,
        )
