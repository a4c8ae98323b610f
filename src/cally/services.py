"""Composition root wiring stores, provider clients and engines together."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

import asyncpg
import httpx

from cally.clock import Clock, utc_now
from cally.config import CallyConfig
from cally.credentials.accounts import AccountManager
from cally.credentials.manager import CredentialLifecycleManager
from cally.credentials.models import Provider
from cally.credentials.oauth import OAuthTokenClient
from cally.credentials.store import CredentialStore
from cally.db import Database, ensure_schema
from cally.events.catalog import EventCatalog
from cally.events.store import EventStore
from cally.sync.calendar import CalendarReconciler
from cally.sync.issues import IssueStatusReconciler
from cally.timemanager.engine import TaskSessionEngine
from cally.timemanager.store import SessionStore

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


@dataclass
class CallyServices:
    """Everything a consuming layer needs to serve one process."""

    config: CallyConfig
    credentials: CredentialLifecycleManager
    accounts: AccountManager
    events: EventCatalog
    calendar: CalendarReconciler
    issues: IssueStatusReconciler
    time_manager: TaskSessionEngine


def build_services(
    config: CallyConfig,
    pool: asyncpg.Pool,
    http_client: httpx.AsyncClient,
    *,
    clock: Clock = utc_now,
) -> CallyServices:
    credential_store = CredentialStore(pool)
    event_store = EventStore(pool)
    providers = {Provider.GOOGLE: config.google, Provider.JIRA: config.jira}

    credentials = CredentialLifecycleManager(
        credential_store,
        {
            provider: OAuthTokenClient(provider, provider_config, http_client, clock=clock)
            for provider, provider_config in providers.items()
        },
        clock=clock,
        lead_times={
            provider: timedelta(seconds=provider_config.refresh_lead_seconds)
            for provider, provider_config in providers.items()
        },
    )
    return CallyServices(
        config=config,
        credentials=credentials,
        accounts=AccountManager(credential_store, clock=clock),
        events=EventCatalog(event_store, clock=clock),
        calendar=CalendarReconciler(
            event_store, credentials, http_client, clock=clock, page_size=config.sync.page_size
        ),
        issues=IssueStatusReconciler(
            event_store,
            credentials,
            http_client,
            clock=clock,
            page_size=config.sync.issue_page_size,
        ),
        time_manager=TaskSessionEngine(
            SessionStore(pool), event_store, clock=clock, config=config.time_manager
        ),
    )


@asynccontextmanager
async def open_services(
    config: CallyConfig, *, clock: Clock = utc_now
) -> AsyncIterator[CallyServices]:
    """Connect to the existing database, ensure the schema and yield wired services.

    Creating the database itself is left to ``cally init-db``.
    """
    db = Database.from_env(config.db_name)
    pool = await db.connect()
    try:
        await ensure_schema(pool)
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as http_client:
            yield build_services(config, pool, http_client, clock=clock)
    finally:
        await db.close()
