"""Persistent task sessions and per-user time-manager state.

Session closes are conditional on the expected current status, and state
writes are compare-and-set on ``version``.  A partial unique index keeps at
most one active main-task session per user at the storage level.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from cally.errors import ConcurrentUpdateError
from cally.timemanager.models import SessionStatus, TaskSession, TimeManagerState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_TASK_SESSIONS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS task_sessions (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    event_id UUID NOT NULL,
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    estimated_duration INTEGER,
    actual_duration INTEGER,
    status TEXT NOT NULL DEFAULT 'active',
    is_main_task BOOLEAN NOT NULL DEFAULT true,
    notes TEXT,
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

_TASK_SESSIONS_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS task_sessions_user_status_idx
    ON task_sessions (user_id, status)
"""

_TASK_SESSIONS_ONE_ACTIVE_MAIN_DDL = """
CREATE UNIQUE INDEX IF NOT EXISTS task_sessions_one_active_main_idx
    ON task_sessions (user_id)
    WHERE status = 'active' AND is_main_task
"""

_TIME_MANAGER_STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS time_manager_state (
    user_id TEXT PRIMARY KEY,
    current_main_task_id UUID,
    current_sub_tasks JSONB NOT NULL DEFAULT '[]',
    last_active_time TIMESTAMPTZ,
    daily_stats JSONB NOT NULL DEFAULT '{}',
    preferences JSONB NOT NULL DEFAULT '{}',
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

TIME_MANAGER_DDL = (
    _TASK_SESSIONS_TABLE_DDL,
    _TASK_SESSIONS_INDEX_DDL,
    _TASK_SESSIONS_ONE_ACTIVE_MAIN_DDL,
    _TIME_MANAGER_STATE_TABLE_DDL,
)

_SESSION_COLUMNS = (
    "id, user_id, event_id, start_time, end_time, estimated_duration, actual_duration, "
    "status, is_main_task, notes, metadata, created_at, updated_at"
)
_STATE_COLUMNS = (
    "user_id, current_main_task_id, current_sub_tasks, last_active_time, daily_stats, "
    "preferences, version, created_at, updated_at"
)


class SessionRepository(Protocol):
    """Storage operations required by the task session engine."""

    async def create_session(self, session: TaskSession) -> TaskSession: ...

    async def get_session(self, user_id: str, session_id: uuid.UUID) -> TaskSession | None: ...

    async def list_sessions(
        self,
        user_id: str,
        *,
        statuses: Collection[SessionStatus] | None = None,
        event_id: uuid.UUID | None = None,
    ) -> list[TaskSession]: ...

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
    ) -> TaskSession | None: ...

    async def load_state(self, user_id: str, *, defaults: TimeManagerState) -> TimeManagerState: ...

    async def save_state(self, state: TimeManagerState) -> TimeManagerState: ...


def _decode_jsonb(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _uuid_or_none(value: Any) -> uuid.UUID | None:
    return uuid.UUID(str(value)) if value is not None else None


def row_to_session(row: Any) -> TaskSession:
    return TaskSession(
        id=uuid.UUID(str(row["id"])),
        user_id=row["user_id"],
        event_id=uuid.UUID(str(row["event_id"])),
        start_time=row["start_time"],
        end_time=row["end_time"],
        estimated_duration=row["estimated_duration"],
        actual_duration=row["actual_duration"],
        status=SessionStatus(row["status"]),
        is_main_task=row["is_main_task"],
        notes=row["notes"],
        metadata=_decode_jsonb(row["metadata"], {}),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def row_to_state(row: Any) -> TimeManagerState:
    return TimeManagerState(
        user_id=row["user_id"],
        current_main_task_id=_uuid_or_none(row["current_main_task_id"]),
        current_sub_tasks=_decode_jsonb(row["current_sub_tasks"], []),
        last_active_time=row["last_active_time"],
        daily_stats=_decode_jsonb(row["daily_stats"], {}),
        preferences=_decode_jsonb(row["preferences"], {}),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SessionStore:
    """asyncpg-backed :class:`SessionRepository`."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create_session(self, session: TaskSession) -> TaskSession:
        try:
            row = await self._pool.fetchrow(
                f"""
                INSERT INTO task_sessions (
                    id, user_id, event_id, start_time, end_time, estimated_duration,
                    actual_duration, status, is_main_task, notes, metadata
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
                RETURNING {_SESSION_COLUMNS}
                """,
                session.id,
                session.user_id,
                session.event_id,
                session.start_time,
                session.end_time,
                session.estimated_duration,
                session.actual_duration,
                session.status.value,
                session.is_main_task,
                session.notes,
                json.dumps(session.metadata, default=str),
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConcurrentUpdateError(
                key=f"active_main_task:{session.user_id}", expected_version=0, actual_version=None
            ) from exc
        return row_to_session(row)

    async def get_session(self, user_id: str, session_id: uuid.UUID) -> TaskSession | None:
        row = await self._pool.fetchrow(
            f"SELECT {_SESSION_COLUMNS} FROM task_sessions WHERE id = $1 AND user_id = $2",
            session_id,
            user_id,
        )
        return row_to_session(row) if row is not None else None

    async def list_sessions(
        self,
        user_id: str,
        *,
        statuses: Collection[SessionStatus] | None = None,
        event_id: uuid.UUID | None = None,
    ) -> list[TaskSession]:
        clauses = ["user_id = $1"]
        args: list[Any] = [user_id]
        if statuses is not None:
            args.append([status.value for status in statuses])
            clauses.append(f"status = ANY(${len(args)}::text[])")
        if event_id is not None:
            args.append(event_id)
            clauses.append(f"event_id = ${len(args)}")
        rows = await self._pool.fetch(
            f"SELECT {_SESSION_COLUMNS} FROM task_sessions WHERE {' AND '.join(clauses)} "
            "ORDER BY start_time",
            *args,
        )
        return [row_to_session(row) for row in rows]

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
        row = await self._pool.fetchrow(
            f"""
            UPDATE task_sessions
            SET status = $4,
                end_time = $5,
                actual_duration = $6,
                notes = $7,
                metadata = $8::jsonb,
                updated_at = now()
            WHERE id = $1 AND user_id = $2 AND status = ANY($3::text[])
            RETURNING {_SESSION_COLUMNS}
            """,
            session_id,
            user_id,
            [expected_status.value for expected_status in expected],
            status.value,
            end_time,
            actual_duration,
            notes,
            json.dumps(metadata, default=str),
        )
        return row_to_session(row) if row is not None else None

    async def load_state(self, user_id: str, *, defaults: TimeManagerState) -> TimeManagerState:
        await self._pool.execute(
            """
            INSERT INTO time_manager_state (user_id, preferences)
            VALUES ($1, $2::jsonb)
            ON CONFLICT (user_id) DO NOTHING
            """,
            user_id,
            defaults.preferences.model_dump_json(),
        )
        row = await self._pool.fetchrow(
            f"SELECT {_STATE_COLUMNS} FROM time_manager_state WHERE user_id = $1",
            user_id,
        )
        return row_to_state(row)

    async def save_state(self, state: TimeManagerState) -> TimeManagerState:
        row = await self._pool.fetchrow(
            f"""
            UPDATE time_manager_state
            SET current_main_task_id = $3,
                current_sub_tasks = $4::jsonb,
                last_active_time = $5,
                daily_stats = $6::jsonb,
                preferences = $7::jsonb,
                version = version + 1,
                updated_at = now()
            WHERE user_id = $1 AND version = $2
            RETURNING {_STATE_COLUMNS}
            """,
            state.user_id,
            state.version,
            state.current_main_task_id,
            json.dumps([str(session_id) for session_id in state.current_sub_tasks]),
            state.last_active_time,
            json.dumps({day: stats.model_dump() for day, stats in state.daily_stats.items()}),
            state.preferences.model_dump_json(),
        )
        if row is not None:
            return row_to_state(row)

        actual = await self._pool.fetchval(
            "SELECT version FROM time_manager_state WHERE user_id = $1",
            state.user_id,
        )
        raise ConcurrentUpdateError(
            key=f"time_manager_state:{state.user_id}",
            expected_version=state.version,
            actual_version=actual,
        )
