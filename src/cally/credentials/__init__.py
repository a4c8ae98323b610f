"""Delegated credentials: storage, OAuth grants, lifecycle and accounts."""

from __future__ import annotations

from .accounts import AccountManager
from .manager import CredentialLifecycleManager, classify
from .models import (
    PRIMARY,
    AccessToken,
    AccountProfile,
    AccountSelector,
    ConnectionHealth,
    ConnectionStatus,
    Credential,
    CredentialState,
    GoogleMeta,
    InvalidationReason,
    JiraMeta,
    Provider,
    TokenGrant,
)
from .oauth import OAuthTokenClient, TokenRejectedError
from .store import CredentialRepository, CredentialStore

__all__ = [
    "PRIMARY",
    "AccessToken",
    "AccountManager",
    "AccountProfile",
    "AccountSelector",
    "ConnectionHealth",
    "ConnectionStatus",
    "Credential",
    "CredentialLifecycleManager",
    "CredentialRepository",
    "CredentialState",
    "CredentialStore",
    "GoogleMeta",
    "InvalidationReason",
    "JiraMeta",
    "OAuthTokenClient",
    "Provider",
    "TokenGrant",
    "TokenRejectedError",
    "classify",
]
