"""Integration tests for the asyncpg stores against a real PostgreSQL."""

from __future__ import annotations

import shutil
import uuid
from datetime import UTC, datetime, timedelta

import asyncpg
import pytest

from cally.credentials.models import PRIMARY, AccountSelector, Provider
from cally.credentials.store import CredentialStore
from cally.errors import ConcurrentUpdateError
from cally.events.models import EventOrigin, SyncStatus, TimeWindow
from cally.events.store import EventStore
from cally.timemanager.models import (
    DailyStats,
    SessionStatus,
    TaskSession,
    TimeManagerState,
)
from cally.timemanager.store import SessionStore

docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]

START = datetime(2026, 3, 2, 9, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestCredentialStore:
    async def test_token_update_is_compare_and_set(
        self, provisioned_postgres_pool, make_credential
    ):
        async with provisioned_postgres_pool() as pool:
            store = CredentialStore(pool)
            stored = await store.insert(make_credential())
            assert stored.version == 1

            updated = await store.update_tokens(
                stored.id,
                access_token="access-2",
                refresh_token=stored.refresh_token,
                expires_at=START + timedelta(hours=1),
                scope=None,
                refreshed_at=START,
                expected_version=1,
            )
            assert updated.version == 2
            assert updated.access_token == "access-2"

            with pytest.raises(ConcurrentUpdateError) as excinfo:
                await store.update_tokens(
                    stored.id,
                    access_token="access-3",
                    refresh_token=None,
                    expires_at=None,
                    scope=None,
                    refreshed_at=START,
                    expected_version=1,
                )
            assert excinfo.value.actual_version == 2

    async def test_one_active_primary_per_provider(
        self, provisioned_postgres_pool, make_credential
    ):
        async with provisioned_postgres_pool() as pool:
            store = CredentialStore(pool)
            await store.insert(make_credential(account_id="a"))
            await store.insert(make_credential(Provider.JIRA, account_id="cloud-1"))

            with pytest.raises(asyncpg.UniqueViolationError):
                await store.insert(make_credential(account_id="b"))

    async def test_primary_lookup_and_swap(self, provisioned_postgres_pool, make_credential):
        async with provisioned_postgres_pool() as pool:
            store = CredentialStore(pool)
            first = await store.insert(make_credential(account_id="a"))
            second = await store.insert(make_credential(account_id="b", is_primary=False))

            assert (await store.find("user-1", Provider.GOOGLE, PRIMARY)).id == first.id

            await store.set_primary("user-1", Provider.GOOGLE, second.id)

            assert (await store.find("user-1", Provider.GOOGLE, PRIMARY)).id == second.id
            by_account = await store.find(
                "user-1", Provider.GOOGLE, AccountSelector(account_id="a")
            )
            assert by_account.is_primary is False
            assert by_account.metadata.email == "a@example.com"

    async def test_deactivate_hides_from_active_listing(
        self, provisioned_postgres_pool, make_credential
    ):
        async with provisioned_postgres_pool() as pool:
            store = CredentialStore(pool)
            stored = await store.insert(make_credential())

            await store.deactivate(stored.id, reason="invalid_grant", at=START)

            assert await store.list_for_user("user-1") == []
            (inactive,) = await store.list_for_user("user-1", include_inactive=True)
            assert inactive.deactivation_reason == "invalid_grant"
            assert inactive.is_primary


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEventStore:
    async def test_upsert_keeps_identity(self, provisioned_postgres_pool, make_event):
        async with provisioned_postgres_pool() as pool:
            store = EventStore(pool)
            first = await store.upsert(make_event("g1", start_at=START))
            second = await store.upsert(make_event("g1", start_at=START, title="Renamed"))

            assert second.id == first.id
            assert second.title == "Renamed"
            assert (await store.get("user-1", first.id)).title == "Renamed"
            assert await store.get("user-2", first.id) is None

    async def test_window_listing_and_delete(self, provisioned_postgres_pool, make_event):
        async with provisioned_postgres_pool() as pool:
            store = EventStore(pool)
            inside = await store.upsert(make_event("g1", start_at=START))
            await store.upsert(make_event("g2", start_at=START + timedelta(days=40)))
            await store.upsert(make_event("g3", calendar_id="team", start_at=START))
            window = TimeWindow(START - timedelta(days=1), START + timedelta(days=1))

            listed = await store.list_in_window(
                "user-1",
                calendar_id="primary",
                event_type=EventOrigin.GOOGLE_CALENDAR,
                window=window,
            )
            assert [event.id for event in listed] == [inside.id]

            assert await store.delete("user-1", [inside.id]) == 1
            assert await store.delete("user-1", []) == 0

    async def test_soft_deleted_rows_leave_origin_listing(
        self, provisioned_postgres_pool, make_event
    ):
        async with provisioned_postgres_pool() as pool:
            store = EventStore(pool)
            event = await store.upsert(
                make_event("PROJ-1", event_type=EventOrigin.JIRA_TASK, calendar_id="PROJ")
            )

            await store.mark_sync_status("user-1", event.id, SyncStatus.DELETED, at=START)

            assert await store.list_by_origin("user-1", EventOrigin.JIRA_TASK) == []
            (kept,) = await store.list_by_origin(
                "user-1", EventOrigin.JIRA_TASK, include_deleted=True
            )
            assert kept.sync_status is SyncStatus.DELETED


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _session(**overrides) -> TaskSession:
    fields = {"user_id": "user-1", "event_id": uuid.uuid4(), "start_time": START}
    fields.update(overrides)
    return TaskSession(**fields)


class TestSessionStore:
    async def test_single_active_main_session(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            store = SessionStore(pool)
            await store.create_session(_session())
            await store.create_session(_session(is_main_task=False))

            with pytest.raises(ConcurrentUpdateError):
                await store.create_session(_session())

    async def test_close_is_conditional(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            store = SessionStore(pool)
            session = await store.create_session(_session(metadata={"started_early": True}))

            closed = await store.close_session(
                "user-1",
                session.id,
                expected=[SessionStatus.ACTIVE],
                status=SessionStatus.COMPLETED,
                end_time=START + timedelta(minutes=30),
                actual_duration=30,
                notes="done",
                metadata={**session.metadata, "rating": 5},
            )
            assert closed.status is SessionStatus.COMPLETED
            assert closed.metadata == {"started_early": True, "rating": 5}

            again = await store.close_session(
                "user-1",
                session.id,
                expected=[SessionStatus.ACTIVE],
                status=SessionStatus.CANCELLED,
                end_time=None,
                actual_duration=None,
                notes=None,
                metadata={},
            )
            assert again is None
            listed = await store.list_sessions(
                "user-1", statuses=[SessionStatus.COMPLETED], event_id=session.event_id
            )
            assert [s.id for s in listed] == [session.id]

    async def test_state_compare_and_set(self, provisioned_postgres_pool):
        async with provisioned_postgres_pool() as pool:
            store = SessionStore(pool)
            defaults = TimeManagerState(user_id="user-1")
            state = await store.load_state("user-1", defaults=defaults)
            assert state.version == 0
            assert (await store.load_state("user-1", defaults=defaults)).version == 0

            main_id, sub_id = uuid.uuid4(), uuid.uuid4()
            state.current_main_task_id = main_id
            state.current_sub_tasks = [sub_id]
            state.daily_stats["2026-03-02"] = DailyStats(tasks_completed=1, total_time_spent=30)
            saved = await store.save_state(state)

            assert saved.version == 1
            reloaded = await store.load_state("user-1", defaults=defaults)
            assert reloaded.current_main_task_id == main_id
            assert reloaded.current_sub_tasks == [sub_id]
            assert reloaded.daily_stats["2026-03-02"].total_time_spent == 30

            with pytest.raises(ConcurrentUpdateError):
                await store.save_state(state)
