"""Read and author access to the local event cache.

Nothing here contacts a provider.  Google events are written through
:class:`cally.sync.calendar.CalendarReconciler`; manual events live only in
the cache.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from cally.clock import Clock, utc_now
from cally.errors import EventNotFoundError, InvalidInputError
from cally.events.models import (
    ORIGIN_COLORS,
    Attendee,
    EventDraft,
    EventOrigin,
    EventStats,
    EventStatus,
    ExternalEvent,
    SyncStatus,
    TimeWindow,
)
from cally.events.store import EventRepository

logger = logging.getLogger(__name__)

MANUAL_CALENDAR_ID = "local"


class EventCatalog:
    def __init__(self, events: EventRepository, *, clock: Clock = utc_now) -> None:
        self._events = events
        self._clock = clock

    async def list_events(
        self,
        user_id: str,
        window: TimeWindow | None = None,
        event_type: EventOrigin | None = None,
    ) -> list[ExternalEvent]:
        return await self._events.list_events(user_id, window, event_type)

    async def event_stats(self, user_id: str) -> EventStats:
        now = self._clock()
        return await self._events.event_stats(user_id, today=TimeWindow.utc_day(now), now=now)

    async def create_manual_event(
        self,
        user_id: str,
        draft: EventDraft,
        *,
        priority: str = "medium",
        status: EventStatus = EventStatus.CONFIRMED,
        metadata: dict[str, Any] | None = None,
    ) -> ExternalEvent:
        """Store *draft* as a cache-only ``manual`` event."""
        event = ExternalEvent(
            user_id=user_id,
            external_id=f"manual-{uuid.uuid4()}",
            calendar_id=MANUAL_CALENDAR_ID,
            event_type=EventOrigin.MANUAL,
            title=draft.title,
            description=draft.description,
            start_at=draft.start_at,
            end_at=draft.end_at,
            all_day=draft.all_day,
            location=draft.location,
            attendees=[Attendee(email=email) for email in draft.attendees],
            status=status,
            priority=priority,
            color=ORIGIN_COLORS[EventOrigin.MANUAL],
            metadata={"timezone": draft.timezone, **(metadata or {})},
            sync_status=SyncStatus.MANUAL,
        )
        stored = await self._events.upsert(event)
        logger.info("Created manual event %s for user %s", stored.id, user_id)
        return stored

    async def delete_local_event(self, user_id: str, event_id: uuid.UUID) -> None:
        """Drop a manual or Jira row from the cache; the Jira issue itself is untouched."""
        event = await self._events.get(user_id, event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found", event_id=str(event_id))
        if event.event_type is EventOrigin.GOOGLE_CALENDAR:
            raise InvalidInputError(
                f"Event {event_id} is a Google Calendar event; delete it through the calendar"
            )
        await self._events.delete(user_id, [event.id])
