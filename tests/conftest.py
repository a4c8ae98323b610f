"""Shared unit-test fixtures: in-memory stores, a controllable clock and factories.

The in-memory repositories honour the same contracts as the asyncpg stores:
conditional writes raise ``ConcurrentUpdateError`` on a version mismatch,
session closes only apply from the expected status, and at most one active
main-task session exists per user.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Collection, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from cally.credentials.models import (
    AccountSelector,
    Credential,
    GoogleMeta,
    JiraMeta,
    Provider,
)
from cally.errors import ConcurrentUpdateError
from cally.events.models import EventOrigin, EventStats, ExternalEvent, SyncStatus, TimeWindow
from cally.timemanager.models import SessionStatus, TaskSession, TimeManagerState

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    """Dict-backed ``CredentialRepository``."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        self._clock = clock
        self.rows: dict[uuid.UUID, Credential] = {}
        self._inserted = 0
        self.update_calls = 0
        self.before_update: Callable[[uuid.UUID], None] | None = None

    def _touch(self, credential: Credential, **update: Any) -> Credential:
        updated = credential.model_copy(
            update={**update, "version": credential.version + 1, "updated_at": self._clock()}
        )
        self.rows[credential.id] = updated
        return updated

    def _check_primary(self, candidate: Credential) -> None:
        if not (candidate.is_primary and candidate.is_active):
            return
        for other in self.rows.values():
            if (
                other.id != candidate.id
                and other.user_id == candidate.user_id
                and other.provider == candidate.provider
                and other.is_primary
                and other.is_active
            ):
                raise AssertionError(
                    f"second active primary for {candidate.user_id}/{candidate.provider}"
                )

    async def get(self, credential_id: uuid.UUID) -> Credential | None:
        return self.rows.get(credential_id)

    async def find(
        self, user_id: str, provider: Provider, selector: AccountSelector
    ) -> Credential | None:
        candidates = [
            c for c in self.rows.values() if c.user_id == user_id and c.provider == provider
        ]
        if selector.credential_id is not None:
            return next((c for c in candidates if c.id == selector.credential_id), None)
        if selector.account_id is not None:
            return next((c for c in candidates if c.account_id == selector.account_id), None)
        primaries = [c for c in candidates if c.is_primary]
        primaries.sort(key=lambda c: (not c.is_active, -(c.updated_at or NOW).timestamp()))
        return primaries[0] if primaries else None

    async def list_for_user(
        self,
        user_id: str,
        provider: Provider | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[Credential]:
        rows = [
            c
            for c in self.rows.values()
            if c.user_id == user_id
            and (provider is None or c.provider == provider)
            and (include_inactive or c.is_active)
        ]
        rows.sort(key=lambda c: (c.provider.value, not c.is_primary, c.created_at))
        return rows

    async def insert(self, credential: Credential) -> Credential:
        for other in self.rows.values():
            if (other.user_id, other.provider, other.account_id) == (
                credential.user_id,
                credential.provider,
                credential.account_id,
            ):
                raise AssertionError("duplicate (user_id, provider, account_id)")
        self._check_primary(credential)
        self._inserted += 1
        stored = credential.model_copy(
            update={
                "created_at": NOW + timedelta(seconds=self._inserted),
                "updated_at": self._clock(),
                "version": 1,
            }
        )
        self.rows[stored.id] = stored
        return stored

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
        self.update_calls += 1
        if self.before_update is not None:
            self.before_update(credential_id)
        current = self.rows.get(credential_id)
        if current is None or current.version != expected_version or not current.is_active:
            raise ConcurrentUpdateError(
                key=f"credential:{credential_id}",
                expected_version=expected_version,
                actual_version=current.version if current is not None else None,
            )
        return self._touch(
            current,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scope=scope or current.scope,
            last_refreshed_at=refreshed_at,
        )

    async def reactivate(self, credential: Credential) -> Credential:
        current = self.rows[credential.id]
        candidate = credential.model_copy(update={"is_active": True})
        self._check_primary(candidate)
        return self._touch(
            current,
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            expires_at=credential.expires_at,
            scope=credential.scope,
            account_name=credential.account_name or current.account_name,
            account_email=credential.account_email or current.account_email,
            metadata=credential.metadata,
            is_primary=credential.is_primary,
            is_active=True,
            deactivation_reason=None,
            deactivated_at=None,
            last_refreshed_at=credential.last_refreshed_at,
        )

    async def deactivate(
        self,
        credential_id: uuid.UUID,
        *,
        reason: str,
        at: datetime,
        clear_primary: bool = False,
    ) -> None:
        current = self.rows[credential_id]
        self._touch(
            current,
            is_active=False,
            is_primary=False if clear_primary else current.is_primary,
            deactivation_reason=reason,
            deactivated_at=at,
        )

    async def set_primary(
        self, user_id: str, provider: Provider, credential_id: uuid.UUID
    ) -> None:
        for other in list(self.rows.values()):
            if (
                other.user_id == user_id
                and other.provider == provider
                and other.id != credential_id
                and other.is_primary
            ):
                self._touch(other, is_primary=False)
        self._touch(self.rows[credential_id], is_primary=True)

    async def rename(self, credential_id: uuid.UUID, account_name: str) -> None:
        self._touch(self.rows[credential_id], account_name=account_name)

    def add(self, credential: Credential) -> Credential:
        """Seed a row directly, bypassing the primary checks."""
        self._inserted += 1
        stored = credential.model_copy(
            update={"created_at": credential.created_at or NOW + timedelta(seconds=self._inserted)}
        )
        self.rows[stored.id] = stored
        return stored


@pytest.fixture
def credential_store(clock: FakeClock) -> InMemoryCredentialStore:
    return InMemoryCredentialStore(clock)


@pytest.fixture
def make_credential() -> Callable[..., Credential]:
    """Build a credential; Jira credentials get site metadata derived from account_id."""

    def _make(
        provider: Provider = Provider.GOOGLE,
        *,
        user_id: str = "user-1",
        account_id: str | None = None,
        **overrides: Any,
    ) -> Credential:
        account_id = account_id or f"{provider.value}-account"
        if provider is Provider.JIRA:
            metadata: GoogleMeta | JiraMeta = JiraMeta(
                cloud_id=account_id, site_url=f"https://{account_id}.atlassian.net"
            )
        else:
            metadata = GoogleMeta(email=f"{account_id}@example.com")
        fields: dict[str, Any] = {
            "user_id": user_id,
            "provider": provider,
            "account_id": account_id,
            "account_name": account_id,
            "access_token": f"access-{account_id}",
            "refresh_token": f"refresh-{account_id}",
            "expires_at": NOW + timedelta(hours=2),
            "is_primary": True,
            "metadata": metadata,
        }
        fields.update(overrides)
        return Credential(**fields)

    return _make


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class InMemoryEventStore:
    """Dict-backed ``EventRepository`` keyed by event id."""

    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, ExternalEvent] = {}
        self.fail_upsert_for: set[str] = set()
        self.upsert_calls = 0

    def _by_identity(self, event: ExternalEvent) -> ExternalEvent | None:
        return next((row for row in self.rows.values() if row.identity == event.identity), None)

    async def get(self, user_id: str, event_id: uuid.UUID) -> ExternalEvent | None:
        row = self.rows.get(event_id)
        return row if row is not None and row.user_id == user_id else None

    async def list_in_window(
        self,
        user_id: str,
        *,
        calendar_id: str,
        event_type: EventOrigin,
        window: TimeWindow,
    ) -> list[ExternalEvent]:
        rows = [
            row
            for row in self.rows.values()
            if row.user_id == user_id
            and row.calendar_id == calendar_id
            and row.event_type == event_type
            and window.contains(row.start_at)
        ]
        return sorted(rows, key=lambda row: row.start_at)

    async def list_by_origin(
        self, user_id: str, event_type: EventOrigin, *, include_deleted: bool = False
    ) -> list[ExternalEvent]:
        rows = [
            row
            for row in self.rows.values()
            if row.user_id == user_id
            and row.event_type == event_type
            and (include_deleted or row.sync_status is not SyncStatus.DELETED)
        ]
        return sorted(rows, key=lambda row: row.start_at)

    async def list_upcoming(
        self, user_id: str, window: TimeWindow, *, limit: int
    ) -> list[ExternalEvent]:
        rows = [
            row
            for row in self.rows.values()
            if row.user_id == user_id
            and window.contains(row.start_at)
            and row.sync_status is not SyncStatus.DELETED
        ]
        return sorted(rows, key=lambda row: row.start_at)[:limit]

    async def list_events(
        self,
        user_id: str,
        window: TimeWindow | None = None,
        event_type: EventOrigin | None = None,
    ) -> list[ExternalEvent]:
        rows = [
            row
            for row in self.rows.values()
            if row.user_id == user_id
            and row.sync_status is not SyncStatus.DELETED
            and (window is None or window.contains(row.start_at))
            and (event_type is None or row.event_type == event_type)
        ]
        return sorted(rows, key=lambda row: row.start_at)

    async def event_stats(
        self, user_id: str, *, today: TimeWindow, now: datetime
    ) -> EventStats:
        stats = EventStats()
        for row in await self.list_events(user_id):
            stats.total += 1
            stats.today += today.contains(row.start_at)
            stats.upcoming += row.start_at > now
            stats.by_type[row.event_type] = stats.by_type.get(row.event_type, 0) + 1
        return stats

    async def upsert(self, event: ExternalEvent) -> ExternalEvent:
        self.upsert_calls += 1
        if event.external_id in self.fail_upsert_for:
            raise RuntimeError(f"simulated storage failure for {event.external_id}")
        existing = self._by_identity(event)
        if existing is not None:
            stored = event.model_copy(
                update={"id": existing.id, "created_at": existing.created_at, "updated_at": NOW}
            )
        else:
            stored = event.model_copy(update={"created_at": NOW, "updated_at": NOW})
        self.rows[stored.id] = stored
        return stored

    async def delete(self, user_id: str, event_ids: Sequence[uuid.UUID]) -> int:
        deleted = 0
        for event_id in event_ids:
            row = self.rows.get(event_id)
            if row is not None and row.user_id == user_id:
                del self.rows[event_id]
                deleted += 1
        return deleted

    async def mark_sync_status(
        self, user_id: str, event_id: uuid.UUID, status: SyncStatus, *, at: datetime
    ) -> None:
        row = self.rows.get(event_id)
        if row is not None and row.user_id == user_id:
            self.rows[event_id] = row.model_copy(update={"sync_status": status, "last_sync_at": at})

    def add(self, event: ExternalEvent) -> ExternalEvent:
        self.rows[event.id] = event
        return event

    def by_external_id(self, external_id: str) -> ExternalEvent | None:
        return next((row for row in self.rows.values() if row.external_id == external_id), None)


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def make_event() -> Callable[..., ExternalEvent]:
    def _make(
        external_id: str = "evt-1",
        *,
        user_id: str = "user-1",
        calendar_id: str = "primary",
        event_type: EventOrigin = EventOrigin.GOOGLE_CALENDAR,
        start_at: datetime | None = None,
        minutes: int = 30,
        **overrides: Any,
    ) -> ExternalEvent:
        start = start_at or NOW + timedelta(hours=1)
        fields: dict[str, Any] = {
            "user_id": user_id,
            "external_id": external_id,
            "calendar_id": calendar_id,
            "event_type": event_type,
            "title": f"Event {external_id}",
            "start_at": start,
            "end_at": start + timedelta(minutes=minutes),
        }
        fields.update(overrides)
        return ExternalEvent(**fields)

    return _make


# ---------------------------------------------------------------------------
# Task sessions
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    """Dict-backed ``SessionRepository`` with compare-and-set state writes."""

    def __init__(self) -> None:
        self.sessions: dict[uuid.UUID, TaskSession] = {}
        self.states: dict[str, TimeManagerState] = {}
        self.save_conflicts = 0
        self.save_calls = 0

    async def create_session(self, session: TaskSession) -> TaskSession:
        if session.status is SessionStatus.ACTIVE and session.is_main_task:
            for other in self.sessions.values():
                if (
                    other.user_id == session.user_id
                    and other.is_main_task
                    and other.status is SessionStatus.ACTIVE
                ):
                    raise ConcurrentUpdateError(
                        key=f"active_main_task:{session.user_id}",
                        expected_version=0,
                        actual_version=None,
                    )
        stored = session.model_copy(update={"created_at": NOW, "updated_at": NOW}, deep=True)
        self.sessions[stored.id] = stored
        return stored

    async def get_session(self, user_id: str, session_id: uuid.UUID) -> TaskSession | None:
        session = self.sessions.get(session_id)
        return session if session is not None and session.user_id == user_id else None

    async def list_sessions(
        self,
        user_id: str,
        *,
        statuses: Collection[SessionStatus] | None = None,
        event_id: uuid.UUID | None = None,
    ) -> list[TaskSession]:
        rows = [
            s
            for s in self.sessions.values()
            if s.user_id == user_id
            and (statuses is None or s.status in statuses)
            and (event_id is None or s.event_id == event_id)
        ]
        return sorted(rows, key=lambda s: s.start_time)

    async def close_session(
        self,
        user_id: str,
        session_id: uuid.UUID,
        *,
        expected: Collection[SessionStatus],
        status: SessionStatus,
        end_time: datetime | None,
        actual_duration: int | None,
        notes: str | None,
        metadata: dict[str, Any],
    ) -> TaskSession | None:
        current = self.sessions.get(session_id)
        if current is None or current.user_id != user_id or current.status not in expected:
            return None
        closed = current.model_copy(
            update={
                "status": status,
                "end_time": end_time,
                "actual_duration": actual_duration,
                "notes": notes,
                "metadata": dict(metadata),
            }
        )
        self.sessions[session_id] = closed
        return closed

    async def load_state(self, user_id: str, *, defaults: TimeManagerState) -> TimeManagerState:
        if user_id not in self.states:
            self.states[user_id] = defaults.model_copy(update={"version": 0}, deep=True)
        return self.states[user_id].model_copy(deep=True)

    async def save_state(self, state: TimeManagerState) -> TimeManagerState:
        self.save_calls += 1
        current = self.states[state.user_id]
        if self.save_conflicts > 0:
            # Simulate another process committing first.
            self.save_conflicts -= 1
            self.states[state.user_id] = current.model_copy(update={"version": current.version + 1})
            raise ConcurrentUpdateError(
                key=f"time_manager_state:{state.user_id}",
                expected_version=state.version,
                actual_version=current.version + 1,
            )
        if current.version != state.version:
            raise ConcurrentUpdateError(
                key=f"time_manager_state:{state.user_id}",
                expected_version=state.version,
                actual_version=current.version,
            )
        saved = state.model_copy(update={"version": state.version + 1}, deep=True)
        self.states[state.user_id] = saved
        return saved.model_copy(deep=True)

    def state_of(self, user_id: str) -> TimeManagerState | None:
        return self.states.get(user_id)


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()
