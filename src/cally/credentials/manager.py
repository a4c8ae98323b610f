"""Credential lifecycle manager.

Guarantees that callers receive a currently valid bearer token or a typed
failure.  State machine per stored credential::

    Active ──(within lead time)──▶ NearExpiry ──▶ Refreshing ──▶ Active
                                                      │
                                                      └──(rejected)──▶ Invalid

Invalid is terminal: only a fresh authorization (see
:mod:`cally.credentials.accounts`) reactivates the row.  Reading an Invalid
credential never touches the network.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import Mapping
from datetime import datetime, timedelta

from cally.clock import Clock, utc_now
from cally.credentials.models import (
    PRIMARY,
    AccessToken,
    AccountSelector,
    ConnectionHealth,
    ConnectionStatus,
    Credential,
    CredentialState,
    InvalidationReason,
    Provider,
)
from cally.credentials.oauth import OAuthTokenClient, TokenRejectedError
from cally.credentials.store import CredentialRepository
from cally.errors import (
    AuthenticationRequiredError,
    ConcurrentUpdateError,
    StateConflictError,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_LEAD = timedelta(minutes=5)
EXPIRES_SOON_WINDOW = timedelta(hours=1)


def classify(credential: Credential, now: datetime, lead_time: timedelta) -> CredentialState:
    """Return the lifecycle state of *credential* at *now*."""
    if not credential.is_active:
        return CredentialState.INVALID
    if credential.expires_at is None:
        return CredentialState.ACTIVE
    if now + lead_time >= credential.expires_at:
        return CredentialState.NEAR_EXPIRY
    return CredentialState.ACTIVE


class CredentialLifecycleManager:
    """Hands out valid tokens, refreshing and invalidating credentials as needed.

    Parameters
    ----------
    store:
        Credential persistence.
    oauth_clients:
        One token endpoint client per provider.
    clock:
        Source of "now".
    lead_times:
        Per-provider NearExpiry lead time; providers not listed use five minutes.
    """

    def __init__(
        self,
        store: CredentialRepository,
        oauth_clients: Mapping[Provider, OAuthTokenClient],
        *,
        clock: Clock = utc_now,
        lead_times: Mapping[Provider, timedelta] | None = None,
    ) -> None:
        self._store = store
        self._oauth_clients = dict(oauth_clients)
        self._clock = clock
        self._lead_times = dict(lead_times or {})
        self._refresh_locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lead_time(self, provider: Provider) -> timedelta:
        return self._lead_times.get(provider, DEFAULT_REFRESH_LEAD)

    def state_of(self, credential: Credential) -> CredentialState:
        return classify(credential, self._clock(), self.lead_time(credential.provider))

    # ------------------------------------------------------------------
    # getValidToken
    # ------------------------------------------------------------------

    async def get_valid_token(
        self,
        user_id: str,
        provider: Provider,
        selector: AccountSelector = PRIMARY,
    ) -> AccessToken:
        """Return a valid token for the selected account.

        Raises
        ------
        AuthenticationRequiredError
            No such credential, the credential is Invalid, or a refresh was
            rejected (the credential is invalidated first).
        TransientFailureError
            The token endpoint could not be reached; the credential is unchanged.
        StateConflictError
            A concurrent writer changed the credential and left it unusable.
        """
        credential = await self._store.find(user_id, provider, selector)
        if credential is None:
            raise AuthenticationRequiredError(
                f"No {provider} credential connected for {selector.describe()}",
                provider=provider.value,
                account_id=selector.account_id,
                reason="not_connected",
            )

        state = self.state_of(credential)
        if state is CredentialState.INVALID:
            raise self._invalid_error(credential)
        if state is CredentialState.ACTIVE:
            return AccessToken.from_credential(credential)
        return await self._refresh(credential)

    async def _refresh(self, credential: Credential) -> AccessToken:
        lock = self._refresh_locks.setdefault(credential.id, asyncio.Lock())
        async with lock:
            # Another task may have refreshed while this one waited.
            current = await self._store.get(credential.id)
            if current is None:
                raise AuthenticationRequiredError(
                    f"{credential.provider} credential {credential.id} no longer exists",
                    provider=credential.provider.value,
                    account_id=credential.account_id,
                )
            state = self.state_of(current)
            if state is CredentialState.INVALID:
                raise self._invalid_error(current)
            if state is CredentialState.ACTIVE:
                return AccessToken.from_credential(current)

            if current.refresh_token is None:
                await self._invalidate(current, InvalidationReason.MISSING_REFRESH_TOKEN.value)
                raise AuthenticationRequiredError(
                    f"{current.provider} credential {current.id} has no refresh token",
                    provider=current.provider.value,
                    account_id=current.account_id,
                    reason=InvalidationReason.MISSING_REFRESH_TOKEN.value,
                )

            logger.info(
                "Refreshing %s credential %s (state=%s, expires_at=%s)",
                current.provider,
                current.id,
                CredentialState.REFRESHING,
                current.expires_at,
            )
            client = self._oauth_clients.get(current.provider)
            if client is None:
                raise AuthenticationRequiredError(
                    f"No OAuth client configured for provider {current.provider}",
                    provider=current.provider.value,
                    account_id=current.account_id,
                    reason="provider_not_configured",
                )

            try:
                grant = await client.refresh(current.refresh_token)
            except TokenRejectedError as exc:
                await self._invalidate(current, exc.reason)
                exc.account_id = current.account_id
                raise

            try:
                updated = await self._store.update_tokens(
                    current.id,
                    access_token=grant.access_token,
                    refresh_token=grant.refresh_token or current.refresh_token,
                    expires_at=grant.expires_at,
                    scope=grant.scope,
                    refreshed_at=self._clock(),
                    expected_version=current.version,
                )
            except ConcurrentUpdateError:
                return await self._resolve_concurrent_refresh(current)

            logger.info("Refreshed %s credential %s", updated.provider, updated.id)
            return AccessToken.from_credential(updated)

    async def _resolve_concurrent_refresh(self, credential: Credential) -> AccessToken:
        winner = await self._store.get(credential.id)
        if winner is not None and self.state_of(winner) is CredentialState.ACTIVE:
            logger.info(
                "Credential %s was refreshed concurrently; using the stored token", credential.id
            )
            return AccessToken.from_credential(winner)
        if winner is not None and not winner.is_active:
            raise self._invalid_error(winner)
        raise StateConflictError(
            f"Credential {credential.id} changed during refresh; try again",
            credential_id=str(credential.id),
        )

    async def _invalidate(self, credential: Credential, reason: str) -> None:
        await self._store.deactivate(credential.id, reason=reason, at=self._clock())
        logger.warning(
            "%s credential %s for user %s requires reconnection (reason=%s)",
            credential.provider,
            credential.id,
            credential.user_id,
            reason,
        )

    @staticmethod
    def _invalid_error(credential: Credential) -> AuthenticationRequiredError:
        reason = credential.deactivation_reason or "inactive"
        return AuthenticationRequiredError(
            f"{credential.provider} account {credential.account_id} requires reconnection",
            provider=credential.provider.value,
            account_id=credential.account_id,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_connection_health(
        self,
        user_id: str,
        provider: Provider,
        selector: AccountSelector = PRIMARY,
    ) -> ConnectionHealth:
        """Describe whether the selected account is usable without touching the network."""
        credential = await self._store.find(user_id, provider, selector)
        if credential is None:
            return ConnectionHealth(
                status=ConnectionStatus.NOT_CONNECTED,
                provider=provider,
                message=f"No {provider} account connected",
            )
        if not credential.is_active:
            return ConnectionHealth(
                status=ConnectionStatus.NEEDS_RECONNECTION,
                provider=provider,
                credential_id=credential.id,
                account_id=credential.account_id,
                expires_at=credential.expires_at,
                reason=credential.deactivation_reason,
                message="Authentication expired, please reconnect",
            )
        if (
            credential.expires_at is not None
            and credential.expires_at - self._clock() < EXPIRES_SOON_WINDOW
        ):
            return ConnectionHealth(
                status=ConnectionStatus.EXPIRES_SOON,
                provider=provider,
                credential_id=credential.id,
                account_id=credential.account_id,
                expires_at=credential.expires_at,
                message="Token expires soon; it will be refreshed on next use",
            )
        return ConnectionHealth(
            status=ConnectionStatus.CONNECTED,
            provider=provider,
            credential_id=credential.id,
            account_id=credential.account_id,
            expires_at=credential.expires_at,
            message="Connected",
        )

    async def active_accounts(self, user_id: str, provider: Provider) -> list[Credential]:
        """Active credentials of *provider*, primary first."""
        return await self._store.list_for_user(user_id, provider)

    async def accounts_needing_reconnection(
        self, user_id: str, provider: Provider | None = None
    ) -> list[Credential]:
        """Credentials invalidated by refresh failures (explicitly removed ones excluded)."""
        credentials = await self._store.list_for_user(user_id, provider, include_inactive=True)
        return [
            credential
            for credential in credentials
            if not credential.is_active
            and credential.deactivation_reason != InvalidationReason.REMOVED.value
        ]
