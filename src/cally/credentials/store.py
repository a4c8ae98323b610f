"""Persistent credential storage.

:class:`CredentialRepository` is the seam the lifecycle manager and the
account manager depend on; :class:`CredentialStore` implements it on an
asyncpg pool.  Token updates are conditional on the row ``version`` so two
concurrent refreshes of the same credential cannot silently overwrite each
other.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Protocol

import asyncpg
from pydantic import TypeAdapter

from cally.credentials.models import (
    AccountSelector,
    Credential,
    Provider,
    ProviderMetadata,
)
from cally.errors import ConcurrentUpdateError

logger = logging.getLogger(__name__)

_METADATA_ADAPTER: TypeAdapter[Any] = TypeAdapter(ProviderMetadata)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREDENTIALS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS credentials (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    account_id TEXT NOT NULL,
    account_name TEXT,
    account_email TEXT,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    expires_at TIMESTAMPTZ,
    scope TEXT,
    is_primary BOOLEAN NOT NULL DEFAULT false,
    is_active BOOLEAN NOT NULL DEFAULT true,
    metadata JSONB NOT NULL DEFAULT '{}',
    deactivation_reason TEXT,
    deactivated_at TIMESTAMPTZ,
    last_refreshed_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, provider, account_id)
)
"""

_CREDENTIALS_PRIMARY_INDEX_DDL = """
CREATE UNIQUE INDEX IF NOT EXISTS credentials_one_active_primary_idx
    ON credentials (user_id, provider)
    WHERE is_primary AND is_active
"""

CREDENTIALS_DDL = (_CREDENTIALS_TABLE_DDL, _CREDENTIALS_PRIMARY_INDEX_DDL)

_COLUMNS = (
    "id, user_id, provider, account_id, account_name, account_email, access_token, "
    "refresh_token, expires_at, scope, is_primary, is_active, metadata, "
    "deactivation_reason, deactivated_at, last_refreshed_at, version, created_at, updated_at"
)


class CredentialRepository(Protocol):
    """Storage operations required by the credential services."""

    async def get(self, credential_id: uuid.UUID) -> Credential | None: ...

    async def find(
        self, user_id: str, provider: Provider, selector: AccountSelector
    ) -> Credential | None: ...

    async def list_for_user(
        self,
        user_id: str,
        provider: Provider | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[Credential]: ...

    async def insert(self, credential: Credential) -> Credential: ...

    async def update_tokens(
        self,
        credential_id: uuid.UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scope: str | None,
        refreshed_at: datetime,
        expected_version: int,
    ) -> Credential: ...

    async def reactivate(self, credential: Credential) -> Credential: ...

    async def deactivate(
        self,
        credential_id: uuid.UUID,
        *,
        reason: str,
        at: datetime,
        clear_primary: bool = False,
    ) -> None: ...

    async def set_primary(
        self, user_id: str, provider: Provider, credential_id: uuid.UUID
    ) -> None: ...

    async def rename(self, credential_id: uuid.UUID, account_name: str) -> None: ...


def _decode_jsonb(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_credential(row: Any) -> Credential:
    """Build a :class:`Credential` from a ``credentials`` row."""
    return Credential(
        id=uuid.UUID(str(row["id"])),
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        account_id=row["account_id"],
        account_name=row["account_name"],
        account_email=row["account_email"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=row["expires_at"],
        scope=row["scope"],
        is_primary=row["is_primary"],
        is_active=row["is_active"],
        metadata=_METADATA_ADAPTER.validate_python(_decode_jsonb(row["metadata"])),
        deactivation_reason=row["deactivation_reason"],
        deactivated_at=row["deactivated_at"],
        last_refreshed_at=row["last_refreshed_at"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class CredentialStore:
    """asyncpg-backed :class:`CredentialRepository`."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, credential_id: uuid.UUID) -> Credential | None:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM credentials WHERE id = $1",
            credential_id,
        )
        return row_to_credential(row) if row is not None else None

    async def find(
        self, user_id: str, provider: Provider, selector: AccountSelector
    ) -> Credential | None:
        if selector.credential_id is not None:
            row = await self._pool.fetchrow(
                f"SELECT {_COLUMNS} FROM credentials "
                "WHERE id = $1 AND user_id = $2 AND provider = $3",
                selector.credential_id,
                user_id,
                provider.value,
            )
        elif selector.account_id is not None:
            row = await self._pool.fetchrow(
                f"SELECT {_COLUMNS} FROM credentials "
                "WHERE user_id = $1 AND provider = $2 AND account_id = $3",
                user_id,
                provider.value,
                selector.account_id,
            )
        else:
            # An invalidated primary keeps is_primary so callers learn why it failed.
            row = await self._pool.fetchrow(
                f"SELECT {_COLUMNS} FROM credentials "
                "WHERE user_id = $1 AND provider = $2 AND is_primary "
                "ORDER BY is_active DESC, updated_at DESC LIMIT 1",
                user_id,
                provider.value,
            )
        return row_to_credential(row) if row is not None else None

    async def list_for_user(
        self,
        user_id: str,
        provider: Provider | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[Credential]:
        clauses = ["user_id = $1"]
        args: list[Any] = [user_id]
        if provider is not None:
            args.append(provider.value)
            clauses.append(f"provider = ${len(args)}")
        if not include_inactive:
            clauses.append("is_active")
        rows = await self._pool.fetch(
            f"SELECT {_COLUMNS} FROM credentials WHERE {' AND '.join(clauses)} "
            "ORDER BY provider, is_primary DESC, created_at ASC",
            *args,
        )
        return [row_to_credential(row) for row in rows]

    async def insert(self, credential: Credential) -> Credential:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO credentials (
                id, user_id, provider, account_id, account_name, account_email,
                access_token, refresh_token, expires_at, scope, is_primary, is_active,
                metadata, last_refreshed_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::jsonb, $14)
            RETURNING {_COLUMNS}
            """,
            credential.id,
            credential.user_id,
            credential.provider.value,
            credential.account_id,
            credential.account_name,
            credential.account_email,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
            credential.scope,
            credential.is_primary,
            credential.is_active,
            credential.metadata.model_dump_json(),
            credential.last_refreshed_at,
        )
        logger.info(
            "Stored %s credential %s for user %s",
            credential.provider,
            credential.id,
            credential.user_id,
        )
        return row_to_credential(row)

    async def update_tokens(
        self,
        credential_id: uuid.UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scope: str | None,
        refreshed_at: datetime,
        expected_version: int,
    ) -> Credential:
        row = await self._pool.fetchrow(
            f"""
            UPDATE credentials
            SET access_token = $3,
                refresh_token = $4,
                expires_at = $5,
                scope = COALESCE($6, scope),
                last_refreshed_at = $7,
                updated_at = now(),
                version = version + 1
            WHERE id = $1 AND version = $2 AND is_active
            RETURNING {_COLUMNS}
            """,
            credential_id,
            expected_version,
            access_token,
            refresh_token,
            expires_at,
            scope,
            refreshed_at,
        )
        if row is not None:
            return row_to_credential(row)

        actual = await self._pool.fetchval(
            "SELECT version FROM credentials WHERE id = $1",
            credential_id,
        )
        raise ConcurrentUpdateError(
            key=f"credential:{credential_id}",
            expected_version=expected_version,
            actual_version=actual,
        )

    async def reactivate(self, credential: Credential) -> Credential:
        row = await self._pool.fetchrow(
            f"""
            UPDATE credentials
            SET access_token = $2,
                refresh_token = $3,
                expires_at = $4,
                scope = $5,
                account_name = COALESCE($6, account_name),
                account_email = COALESCE($7, account_email),
                metadata = $8::jsonb,
                is_primary = $9,
                is_active = true,
                deactivation_reason = NULL,
                deactivated_at = NULL,
                last_refreshed_at = $10,
                updated_at = now(),
                version = version + 1
            WHERE id = $1
            RETURNING {_COLUMNS}
            """,
            credential.id,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
            credential.scope,
            credential.account_name,
            credential.account_email,
            credential.metadata.model_dump_json(),
            credential.is_primary,
            credential.last_refreshed_at,
        )
        if row is None:
            raise ConcurrentUpdateError(
                key=f"credential:{credential.id}",
                expected_version=credential.version,
                actual_version=None,
            )
        return row_to_credential(row)

    async def deactivate(
        self,
        credential_id: uuid.UUID,
        *,
        reason: str,
        at: datetime,
        clear_primary: bool = False,
    ) -> None:
        await self._pool.execute(
            """
            UPDATE credentials
            SET is_active = false,
                is_primary = CASE WHEN $4 THEN false ELSE is_primary END,
                deactivation_reason = $2,
                deactivated_at = $3,
                updated_at = now(),
                version = version + 1
            WHERE id = $1
            """,
            credential_id,
            reason,
            at,
            clear_primary,
        )
        logger.warning("Deactivated credential %s (reason=%s)", credential_id, reason)

    async def set_primary(
        self, user_id: str, provider: Provider, credential_id: uuid.UUID
    ) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE credentials
                    SET is_primary = false, updated_at = now(), version = version + 1
                    WHERE user_id = $1 AND provider = $2 AND id <> $3 AND is_primary
                    """,
                    user_id,
                    provider.value,
                    credential_id,
                )
                await conn.execute(
                    """
                    UPDATE credentials
                    SET is_primary = true, updated_at = now(), version = version + 1
                    WHERE id = $1
                    """,
                    credential_id,
                )

    async def rename(self, credential_id: uuid.UUID, account_name: str) -> None:
        await self._pool.execute(
            """
            UPDATE credentials
            SET account_name = $2, updated_at = now(), version = version + 1
            WHERE id = $1
            """,
            credential_id,
            account_name,
        )
