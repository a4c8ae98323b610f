"""Credential data models.

A :class:`Credential` is one stored set of delegated tokens for a
(user, provider, account) triple.  Provider-specific metadata is a tagged
variant selected by the ``provider`` field, so a Jira credential can never
be persisted without its cloud id.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Provider(enum.StrEnum):
    GOOGLE = "google"
    JIRA = "jira"


class CredentialState(enum.StrEnum):
    """Lifecycle states of a stored credential."""

    ACTIVE = "active"
    NEAR_EXPIRY = "near_expiry"
    REFRESHING = "refreshing"
    INVALID = "invalid"


class InvalidationReason(enum.StrEnum):
    """Reason codes persisted when a credential leaves the Active states."""

    REFRESH_TOKEN_INVALID = "refresh_token_invalid"
    INVALID_GRANT = "invalid_grant"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    REMOVED = "removed"


class ConnectionStatus(enum.StrEnum):
    NOT_CONNECTED = "not_connected"
    NEEDS_RECONNECTION = "needs_reconnection"
    EXPIRES_SOON = "expires_soon"
    CONNECTED = "connected"


# ---------------------------------------------------------------------------
# Provider metadata (tagged variant)
# ---------------------------------------------------------------------------


class GoogleMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Literal["google"] = "google"
    email: str | None = None
    display_name: str | None = None


class JiraMeta(BaseModel):
    """Atlassian site the credential is scoped to."""

    model_config = ConfigDict(extra="forbid")

    provider: Literal["jira"] = "jira"
    cloud_id: str = Field(min_length=1)
    site_url: str = Field(min_length=1)
    site_name: str | None = None
    scopes: list[str] = Field(default_factory=list)

    @field_validator("site_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


ProviderMetadata = Annotated[GoogleMeta | JiraMeta, Field(discriminator="provider")]


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str = Field(min_length=1)
    provider: Provider
    account_id: str = Field(min_length=1)
    account_name: str | None = None
    account_email: str | None = None
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    is_primary: bool = False
    is_active: bool = True
    metadata: ProviderMetadata
    deactivation_reason: str | None = None
    deactivated_at: datetime | None = None
    last_refreshed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1

    @field_validator("refresh_token")
    @classmethod
    def _blank_refresh_token_is_missing(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def _metadata_matches_provider(self) -> Credential:
        if self.metadata.provider != self.provider.value:
            raise ValueError(
                f"metadata for provider {self.metadata.provider!r} "
                f"cannot be attached to a {self.provider.value!r} credential"
            )
        return self

    def __repr__(self) -> str:
        return (
            f"Credential(id={self.id!s}, user_id={self.user_id!r}, "
            f"provider={self.provider.value!r}, account_id={self.account_id!r}, "
            f"access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at!r}, is_primary={self.is_primary}, "
            f"is_active={self.is_active})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class AccountSelector:
    """Which credential of a (user, provider) pair to use.

    With neither field set the active primary account is selected.
    """

    credential_id: uuid.UUID | None = None
    account_id: str | None = None

    @property
    def is_primary(self) -> bool:
        return self.credential_id is None and self.account_id is None

    def describe(self) -> str:
        if self.credential_id is not None:
            return f"credential {self.credential_id}"
        if self.account_id is not None:
            return f"account {self.account_id}"
        return "primary account"


PRIMARY = AccountSelector()


# ---------------------------------------------------------------------------
# Token grants and issued tokens
# ---------------------------------------------------------------------------


class TokenGrant(BaseModel):
    """Tokens returned by a provider's OAuth token endpoint."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str | None = None

    def __repr__(self) -> str:
        return (
            "TokenGrant(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at!r}, scope={self.scope!r})"
        )

    __str__ = __repr__


class AccessToken(BaseModel):
    """A currently valid bearer token plus the account it belongs to."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str
    credential_id: uuid.UUID
    provider: Provider
    account_id: str
    account_name: str | None = None
    expires_at: datetime | None = None
    metadata: ProviderMetadata

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def __repr__(self) -> str:
        return (
            f"AccessToken(credential_id={self.credential_id!s}, "
            f"provider={self.provider.value!r}, account_id={self.account_id!r}, "
            f"access_token=<REDACTED>, expires_at={self.expires_at!r})"
        )

    __str__ = __repr__

    @classmethod
    def from_credential(cls, credential: Credential) -> AccessToken:
        return cls(
            access_token=credential.access_token,
            credential_id=credential.id,
            provider=credential.provider,
            account_id=credential.account_id,
            account_name=credential.account_name,
            expires_at=credential.expires_at,
            metadata=credential.metadata,
        )


class AccountProfile(BaseModel):
    """Identity of a freshly authorized remote account."""

    model_config = ConfigDict(extra="forbid")

    account_id: str = Field(min_length=1)
    account_name: str | None = None
    account_email: str | None = None
    metadata: ProviderMetadata


class ConnectionHealth(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: ConnectionStatus
    provider: Provider
    credential_id: uuid.UUID | None = None
    account_id: str | None = None
    expires_at: datetime | None = None
    reason: str | None = None
    message: str

    @property
    def needs_action(self) -> bool:
        return self.status in (ConnectionStatus.NOT_CONNECTED, ConnectionStatus.NEEDS_RECONNECTION)


def credential_summary(credential: Credential) -> dict[str, Any]:
    """Token-free view of *credential* for listings and CLI output."""
    return {
        "credential_id": str(credential.id),
        "provider": credential.provider.value,
        "account_id": credential.account_id,
        "account_name": credential.account_name,
        "account_email": credential.account_email,
        "is_primary": credential.is_primary,
        "is_active": credential.is_active,
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        "deactivation_reason": credential.deactivation_reason,
    }
