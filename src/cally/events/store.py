"""Persistent cache of external calendar and issue events."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

import asyncpg

from cally.events.models import EventOrigin, EventStats, ExternalEvent, SyncStatus, TimeWindow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_EXTERNAL_EVENTS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS external_events (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    credential_id UUID,
    account_name TEXT,
    title TEXT NOT NULL,
    description TEXT,
    start_at TIMESTAMPTZ NOT NULL,
    end_at TIMESTAMPTZ NOT NULL,
    all_day BOOLEAN NOT NULL DEFAULT false,
    location TEXT,
    attendees JSONB NOT NULL DEFAULT '[]',
    status TEXT,
    priority TEXT,
    visibility TEXT,
    recurrence_rule TEXT,
    html_link TEXT,
    color TEXT,
    metadata JSONB NOT NULL DEFAULT '{}',
    sync_status TEXT NOT NULL DEFAULT 'synced',
    last_sync_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, external_id, calendar_id)
)
"""

_EXTERNAL_EVENTS_WINDOW_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS external_events_user_start_idx
    ON external_events (user_id, start_at)
"""

EXTERNAL_EVENTS_DDL = (_EXTERNAL_EVENTS_TABLE_DDL, _EXTERNAL_EVENTS_WINDOW_INDEX_DDL)

_COLUMNS = (
    "id, user_id, external_id, calendar_id, event_type, credential_id, account_name, title, "
    "description, start_at, end_at, all_day, location, attendees, status, priority, "
    "visibility, recurrence_rule, html_link, color, metadata, sync_status, last_sync_at, "
    "created_at, updated_at"
)


class EventRepository(Protocol):
    """Storage operations over cached events, always scoped to one user."""

    async def get(self, user_id: str, event_id: uuid.UUID) -> ExternalEvent | None: ...

    async def list_in_window(
        self,
        user_id: str,
        *,
        calendar_id: str,
        event_type: EventOrigin,
        window: TimeWindow,
    ) -> list[ExternalEvent]: ...

    async def list_by_origin(
        self, user_id: str, event_type: EventOrigin, *, include_deleted: bool = False
    ) -> list[ExternalEvent]: ...

    async def list_upcoming(
        self, user_id: str, window: TimeWindow, *, limit: int
    ) -> list[ExternalEvent]: ...

    async def list_events(
        self,
        user_id: str,
        window: TimeWindow | None = None,
        event_type: EventOrigin | None = None,
    ) -> list[ExternalEvent]: ...

    async def event_stats(
        self, user_id: str, *, today: TimeWindow, now: datetime
    ) -> EventStats: ...

    async def upsert(self, event: ExternalEvent) -> ExternalEvent: ...

    async def delete(self, user_id: str, event_ids: Sequence[uuid.UUID]) -> int: ...

    async def mark_sync_status(
        self, user_id: str, event_id: uuid.UUID, status: SyncStatus, *, at: datetime
    ) -> None: ...


def _decode_jsonb(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def row_to_event(row: Any) -> ExternalEvent:
    """Build an :class:`ExternalEvent` from an ``external_events`` row."""
    credential_id = row["credential_id"]
    return ExternalEvent(
        id=uuid.UUID(str(row["id"])),
        user_id=row["user_id"],
        external_id=row["external_id"],
        calendar_id=row["calendar_id"],
        event_type=EventOrigin(row["event_type"]),
        credential_id=uuid.UUID(str(credential_id)) if credential_id is not None else None,
        account_name=row["account_name"],
        title=row["title"],
        description=row["description"],
        start_at=row["start_at"],
        end_at=row["end_at"],
        all_day=row["all_day"],
        location=row["location"],
        attendees=_decode_jsonb(row["attendees"], []),
        status=row["status"],
        priority=row["priority"],
        visibility=row["visibility"],
        recurrence_rule=row["recurrence_rule"],
        html_link=row["html_link"],
        color=row["color"],
        metadata=_decode_jsonb(row["metadata"], {}),
        sync_status=SyncStatus(row["sync_status"]),
        last_sync_at=row["last_sync_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class EventStore:
    """asyncpg-backed :class:`EventRepository`."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, user_id: str, event_id: uuid.UUID) -> ExternalEvent | None:
        row = await self._pool.fetchrow(
            f"SELECT {_COLUMNS} FROM external_events WHERE id = $1 AND user_id = $2",
            event_id,
            user_id,
        )
        return row_to_event(row) if row is not None else None

    async def list_in_window(
        self,
        user_id: str,
        *,
        calendar_id: str,
        event_type: EventOrigin,
        window: TimeWindow,
    ) -> list[ExternalEvent]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM external_events
            WHERE user_id = $1 AND calendar_id = $2 AND event_type = $3
              AND start_at >= $4 AND start_at < $5
            ORDER BY start_at
            """,
            user_id,
            calendar_id,
            event_type.value,
            window.start,
            window.end,
        )
        return [row_to_event(row) for row in rows]

    async def list_by_origin(
        self, user_id: str, event_type: EventOrigin, *, include_deleted: bool = False
    ) -> list[ExternalEvent]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM external_events
            WHERE user_id = $1 AND event_type = $2
              AND ($3 OR sync_status <> 'deleted')
            ORDER BY start_at
            """,
            user_id,
            event_type.value,
            include_deleted,
        )
        return [row_to_event(row) for row in rows]

    async def list_upcoming(
        self, user_id: str, window: TimeWindow, *, limit: int
    ) -> list[ExternalEvent]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM external_events
            WHERE user_id = $1 AND start_at >= $2 AND start_at < $3
              AND sync_status <> 'deleted'
            ORDER BY start_at
            LIMIT $4
            """,
            user_id,
            window.start,
            window.end,
            limit,
        )
        return [row_to_event(row) for row in rows]

    async def list_events(
        self,
        user_id: str,
        window: TimeWindow | None = None,
        event_type: EventOrigin | None = None,
    ) -> list[ExternalEvent]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS} FROM external_events
            WHERE user_id = $1 AND sync_status <> 'deleted'
              AND ($2::timestamptz IS NULL OR start_at >= $2)
              AND ($3::timestamptz IS NULL OR start_at < $3)
              AND ($4::text IS NULL OR event_type = $4)
            ORDER BY start_at
            """,
            user_id,
            window.start if window is not None else None,
            window.end if window is not None else None,
            event_type.value if event_type is not None else None,
        )
        return [row_to_event(row) for row in rows]

    async def event_stats(
        self, user_id: str, *, today: TimeWindow, now: datetime
    ) -> EventStats:
        rows = await self._pool.fetch(
            """
            SELECT event_type,
                   count(*) AS total,
                   count(*) FILTER (WHERE start_at >= $2 AND start_at < $3) AS today,
                   count(*) FILTER (WHERE start_at > $4) AS upcoming
            FROM external_events
            WHERE user_id = $1 AND sync_status <> 'deleted'
            GROUP BY event_type
            """,
            user_id,
            today.start,
            today.end,
            now,
        )
        stats = EventStats()
        for row in rows:
            stats.total += row["total"]
            stats.today += row["today"]
            stats.upcoming += row["upcoming"]
            stats.by_type[EventOrigin(row["event_type"])] = row["total"]
        return stats

    async def upsert(self, event: ExternalEvent) -> ExternalEvent:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO external_events (
                id, user_id, external_id, calendar_id, event_type, credential_id,
                account_name, title, description, start_at, end_at, all_day, location,
                attendees, status, priority, visibility, recurrence_rule, html_link, color,
                metadata, sync_status, last_sync_at
            )
            VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb,
                $15, $16, $17, $18, $19, $20, $21::jsonb, $22, $23
            )
            ON CONFLICT (user_id, external_id, calendar_id) DO UPDATE SET
                event_type = EXCLUDED.event_type,
                credential_id = EXCLUDED.credential_id,
                account_name = EXCLUDED.account_name,
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                start_at = EXCLUDED.start_at,
                end_at = EXCLUDED.end_at,
                all_day = EXCLUDED.all_day,
                location = EXCLUDED.location,
                attendees = EXCLUDED.attendees,
                status = EXCLUDED.status,
                priority = EXCLUDED.priority,
                visibility = EXCLUDED.visibility,
                recurrence_rule = EXCLUDED.recurrence_rule,
                html_link = EXCLUDED.html_link,
                color = EXCLUDED.color,
                metadata = EXCLUDED.metadata,
                sync_status = EXCLUDED.sync_status,
                last_sync_at = EXCLUDED.last_sync_at,
                updated_at = now()
            RETURNING {_COLUMNS}
            """,
            event.id,
            event.user_id,
            event.external_id,
            event.calendar_id,
            event.event_type.value,
            event.credential_id,
            event.account_name,
            event.title,
            event.description,
            event.start_at,
            event.end_at,
            event.all_day,
            event.location,
            json.dumps([attendee.model_dump() for attendee in event.attendees]),
            event.status.value if event.status is not None else None,
            event.priority,
            event.visibility,
            event.recurrence_rule,
            event.html_link,
            event.color,
            json.dumps(event.metadata, default=str),
            event.sync_status.value,
            event.last_sync_at,
        )
        return row_to_event(row)

    async def delete(self, user_id: str, event_ids: Sequence[uuid.UUID]) -> int:
        if not event_ids:
            return 0
        result = await self._pool.execute(
            "DELETE FROM external_events WHERE user_id = $1 AND id = ANY($2::uuid[])",
            user_id,
            list(event_ids),
        )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        deleted = int(result.split()[-1])
        logger.debug("Deleted %d cached event(s) for user %s", deleted, user_id)
        return deleted

    async def mark_sync_status(
        self, user_id: str, event_id: uuid.UUID, status: SyncStatus, *, at: datetime
    ) -> None:
        await self._pool.execute(
            """
            UPDATE external_events
            SET sync_status = $3, last_sync_at = $4, updated_at = now()
            WHERE id = $1 AND user_id = $2
            """,
            event_id,
            user_id,
            status.value,
            at,
        )
