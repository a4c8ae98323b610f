"""Multi-account management: connect, list, promote, rename, remove."""

from __future__ import annotations

import logging
import uuid

from cally.clock import Clock, utc_now
from cally.credentials.models import (
    AccountProfile,
    AccountSelector,
    Credential,
    InvalidationReason,
    Provider,
    TokenGrant,
)
from cally.credentials.store import CredentialRepository
from cally.errors import AccountNotFoundError, InvalidInputError, StateConflictError

logger = logging.getLogger(__name__)


class AccountManager:
    """User-facing operations over the credentials of one user."""

    def __init__(self, store: CredentialRepository, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    async def connect_account(
        self,
        user_id: str,
        provider: Provider,
        grant: TokenGrant,
        profile: AccountProfile,
    ) -> Credential:
        """Persist the outcome of a successful authorization.

        A new account becomes primary when the user has no other active
        primary for *provider*.  Re-authorizing a known account replaces its
        tokens and reactivates it; this is the only way out of Invalid.
        """
        if profile.metadata.provider != provider.value:
            raise InvalidInputError(
                f"Profile metadata for {profile.metadata.provider!r} "
                f"does not match provider {provider.value!r}"
            )

        existing = await self._store.find(
            user_id, provider, AccountSelector(account_id=profile.account_id)
        )
        active = await self._store.list_for_user(user_id, provider)
        existing_id = existing.id if existing is not None else None
        has_other_primary = any(c.is_primary and c.id != existing_id for c in active)
        now = self._clock()

        if existing is not None:
            refreshed = existing.model_copy(
                update={
                    "access_token": grant.access_token,
                    "refresh_token": grant.refresh_token or existing.refresh_token,
                    "expires_at": grant.expires_at,
                    "scope": grant.scope or existing.scope,
                    "account_name": profile.account_name,
                    "account_email": profile.account_email,
                    "metadata": profile.metadata,
                    "is_primary": not has_other_primary,
                    "last_refreshed_at": now,
                }
            )
            credential = await self._store.reactivate(refreshed)
            logger.info(
                "Reconnected %s account %s for user %s", provider, profile.account_id, user_id
            )
            return credential

        credential = Credential(
            user_id=user_id,
            provider=provider,
            account_id=profile.account_id,
            account_name=profile.account_name,
            account_email=profile.account_email,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            scope=grant.scope,
            is_primary=not has_other_primary,
            metadata=profile.metadata,
            last_refreshed_at=now,
        )
        stored = await self._store.insert(credential)
        logger.info(
            "Connected %s account %s for user %s (primary=%s)",
            provider,
            profile.account_id,
            user_id,
            stored.is_primary,
        )
        return stored

    async def list_accounts(
        self, user_id: str, provider: Provider | None = None
    ) -> list[Credential]:
        """Active accounts, primary first, then oldest first."""
        return await self._store.list_for_user(user_id, provider)

    async def get_primary_account(self, user_id: str, provider: Provider) -> Credential | None:
        credential = await self._store.find(user_id, provider, AccountSelector())
        if credential is None or not credential.is_active:
            return None
        return credential

    async def set_primary_account(self, user_id: str, credential_id: uuid.UUID) -> Credential:
        credential = await self._owned(user_id, credential_id)
        if not credential.is_active:
            raise StateConflictError(
                f"Account {credential.account_id} is not active and cannot be primary",
                credential_id=str(credential_id),
            )
        await self._store.set_primary(user_id, credential.provider, credential_id)
        return await self._owned(user_id, credential_id)

    async def rename_account(
        self, user_id: str, credential_id: uuid.UUID, account_name: str
    ) -> Credential:
        normalized = account_name.strip()
        if not normalized:
            raise InvalidInputError("account_name must be a non-empty string")
        await self._owned(user_id, credential_id)
        await self._store.rename(credential_id, normalized)
        return await self._owned(user_id, credential_id)

    async def remove_account(self, user_id: str, credential_id: uuid.UUID) -> None:
        """Soft-delete an account, promoting the oldest remaining one if it was primary."""
        credential = await self._owned(user_id, credential_id)
        await self._store.deactivate(
            credential_id,
            reason=InvalidationReason.REMOVED.value,
            at=self._clock(),
            clear_primary=True,
        )
        logger.info(
            "Removed %s account %s for user %s", credential.provider, credential_id, user_id
        )

        if not credential.is_primary:
            return
        remaining = await self._store.list_for_user(user_id, credential.provider)
        if remaining:
            successor = remaining[0]
            await self._store.set_primary(user_id, credential.provider, successor.id)
            logger.info("Promoted %s account %s to primary", credential.provider, successor.id)

    async def _owned(self, user_id: str, credential_id: uuid.UUID) -> Credential:
        credential = await self._store.get(credential_id)
        if credential is None or credential.user_id != user_id:
            raise AccountNotFoundError(
                f"Account {credential_id} not found", credential_id=str(credential_id)
            )
        return credential
