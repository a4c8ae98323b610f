"""Calendar reconciliation engine.

Pulls a window of remote Google Calendar events, diffs it against the local
cache by external id, removes cached rows that vanished remotely, and
upserts every remote event.  A failed fetch aborts the call; a failed
upsert of one event is recorded and the batch continues.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, computed_field

from cally.clock import Clock, utc_now
from cally.credentials.manager import CredentialLifecycleManager
from cally.credentials.models import PRIMARY, AccessToken, AccountSelector, Provider
from cally.errors import CallyError, EventNotFoundError, InvalidInputError, RemoteNotFoundError
from cally.events.deletion import DeletionAction, DeletionTrigger, deletion_action
from cally.events.models import (
    ORIGIN_COLORS,
    EventDraft,
    EventOrigin,
    EventStatus,
    ExternalEvent,
    ItemError,
    SyncStatus,
    TimeWindow,
)
from cally.events.store import EventRepository
from cally.providers.google import (
    MAX_EVENTS_PAGE_SIZE,
    GoogleCalendarClient,
    RemoteCalendarEvent,
    google_event_id,
    parse_google_event,
)

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)


class ReconcileResult(BaseModel):
    """Outcome of reconciling one calendar window."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    window_start: datetime
    window_end: datetime
    applied: list[ExternalEvent] = Field(default_factory=list)
    removed: list[ExternalEvent] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)

    @computed_field
    @property
    def partial_failure(self) -> bool:
        return bool(self.errors)


class AllCalendarsResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    results: list[ReconcileResult] = Field(default_factory=list)
    failed_calendars: list[ItemError] = Field(default_factory=list)

    @computed_field
    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_calendars) or any(r.partial_failure for r in self.results)

    @property
    def total_applied(self) -> int:
        return sum(len(result.applied) for result in self.results)

    @property
    def total_removed(self) -> int:
        return sum(len(result.removed) for result in self.results)


def _event_status(value: str | None) -> EventStatus | None:
    if value is None:
        return None
    try:
        return EventStatus(value)
    except ValueError:
        return None


def remote_to_external_event(
    remote: RemoteCalendarEvent,
    *,
    user_id: str,
    calendar_id: str,
    token: AccessToken,
    synced_at: datetime,
) -> ExternalEvent:
    """Map a normalized Google event onto a cache row."""
    metadata: dict[str, Any] = {
        "timezone": remote.timezone,
        "etag": remote.etag,
        "organizer": remote.organizer,
        "hangout_link": remote.hangout_link,
        "remote_updated_at": remote.updated_at.isoformat() if remote.updated_at else None,
    }
    return ExternalEvent(
        user_id=user_id,
        external_id=remote.event_id,
        calendar_id=calendar_id,
        event_type=EventOrigin.GOOGLE_CALENDAR,
        credential_id=token.credential_id,
        account_name=token.account_name,
        title=remote.title,
        description=remote.description,
        start_at=remote.start_at,
        end_at=remote.end_at,
        all_day=remote.all_day,
        location=remote.location,
        attendees=remote.attendees,
        status=_event_status(remote.status),
        visibility=remote.visibility,
        recurrence_rule=remote.recurrence_rule,
        html_link=remote.html_link,
        color=ORIGIN_COLORS[EventOrigin.GOOGLE_CALENDAR],
        metadata={key: value for key, value in metadata.items() if value is not None},
        sync_status=SyncStatus.SYNCED,
        last_sync_at=synced_at,
    )


class CalendarReconciler:
    """Keeps cached Google Calendar events in agreement with the remote calendar."""

    def __init__(
        self,
        events: EventRepository,
        credentials: CredentialLifecycleManager,
        http_client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
        page_size: int = MAX_EVENTS_PAGE_SIZE,
    ) -> None:
        self._events = events
        self._credentials = credentials
        self._http_client = http_client
        self._clock = clock
        self._page_size = page_size

    async def _client(
        self, user_id: str, selector: AccountSelector
    ) -> GoogleCalendarClient:
        token = await self._credentials.get_valid_token(user_id, Provider.GOOGLE, selector)
        return GoogleCalendarClient(self._http_client, token)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        user_id: str,
        calendar_id: str = "primary",
        window: TimeWindow | None = None,
        *,
        account: AccountSelector = PRIMARY,
    ) -> ReconcileResult:
        """Bring the cache for (*user_id*, *calendar_id*) within *window* up to date.

        Raises
        ------
        AuthenticationRequiredError, PermissionDeniedError, TransientFailureError
            The remote listing could not be fetched; nothing was changed.
        """
        window = window or TimeWindow.calendar_year(self._clock())
        with _tracer.start_as_current_span("cally.sync.reconcile") as span:
            span.set_attribute("cally.calendar_id", calendar_id)
            client = await self._client(user_id, account)
            items = await client.list_events(calendar_id, window, limit=self._page_size)
            result = await self._apply(user_id, calendar_id, window, client.token, items)
            span.set_attribute("cally.applied", len(result.applied))
            span.set_attribute("cally.removed", len(result.removed))
            span.set_attribute("cally.errors", len(result.errors))
        logger.info(
            "Reconciled calendar %s for user %s: %d applied, %d removed, %d errors",
            calendar_id,
            user_id,
            len(result.applied),
            len(result.removed),
            len(result.errors),
        )
        return result

    async def _apply(
        self,
        user_id: str,
        calendar_id: str,
        window: TimeWindow,
        token: AccessToken,
        items: list[dict[str, Any]],
    ) -> ReconcileResult:
        result = ReconcileResult(
            calendar_id=calendar_id, window_start=window.start, window_end=window.end
        )

        remote_ids = {
            event_id
            for item in items
            if (event_id := google_event_id(item)) is not None
            and str(item.get("status", "")).lower() != "cancelled"
        }
        local = await self._events.list_in_window(
            user_id,
            calendar_id=calendar_id,
            event_type=EventOrigin.GOOGLE_CALENDAR,
            window=window,
        )
        stale = [event for event in local if event.external_id not in remote_ids]
        result.removed = await self._remove(
            user_id, stale, DeletionTrigger.ABSENT_FROM_LISTING
        )

        synced_at = self._clock()
        for item in items:
            external_id = google_event_id(item)
            try:
                remote = parse_google_event(item)
                if remote is None:
                    continue
                event = remote_to_external_event(
                    remote,
                    user_id=user_id,
                    calendar_id=calendar_id,
                    token=token,
                    synced_at=synced_at,
                )
                result.applied.append(await self._events.upsert(event))
            except Exception as exc:
                logger.warning(
                    "Failed to apply remote event %s of calendar %s: %s",
                    external_id,
                    calendar_id,
                    exc,
                )
                result.errors.append(ItemError.from_exception(exc, external_id=external_id))
        return result

    async def _remove(
        self,
        user_id: str,
        events: list[ExternalEvent],
        trigger: DeletionTrigger,
    ) -> list[ExternalEvent]:
        removed: list[ExternalEvent] = []
        hard: list[ExternalEvent] = []
        for event in events:
            action = deletion_action(event.event_type, trigger)
            if action is DeletionAction.HARD_DELETE:
                hard.append(event)
            elif action is DeletionAction.SOFT_DELETE:
                await self._events.mark_sync_status(
                    user_id, event.id, SyncStatus.DELETED, at=self._clock()
                )
                removed.append(event)
        if hard:
            await self._events.delete(user_id, [event.id for event in hard])
            removed.extend(hard)
        return removed

    async def reconcile_all_calendars(
        self,
        user_id: str,
        window: TimeWindow | None = None,
        *,
        account: AccountSelector = PRIMARY,
    ) -> AllCalendarsResult:
        """Reconcile every calendar of the account; one calendar's failure is recorded."""
        window = window or TimeWindow.calendar_year(self._clock())
        client = await self._client(user_id, account)
        calendars = await client.list_calendars()

        outcome = AllCalendarsResult()
        for calendar in calendars:
            try:
                items = await client.list_events(
                    calendar.calendar_id, window, limit=self._page_size
                )
                outcome.results.append(
                    await self._apply(user_id, calendar.calendar_id, window, client.token, items)
                )
            except CallyError as exc:
                logger.warning("Failed to reconcile calendar %s: %s", calendar.calendar_id, exc)
                outcome.failed_calendars.append(
                    ItemError.from_exception(exc, external_id=calendar.calendar_id)
                )
        return outcome

    # ------------------------------------------------------------------
    # Write-through
    # ------------------------------------------------------------------

    async def _local_google_event(self, user_id: str, event_id: uuid.UUID) -> ExternalEvent:
        event = await self._events.get(user_id, event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found", event_id=str(event_id))
        if event.event_type is not EventOrigin.GOOGLE_CALENDAR:
            raise InvalidInputError(
                f"Event {event_id} is a {event.event_type} entry, not a Google Calendar event"
            )
        return event

    @staticmethod
    def _selector_for(event: ExternalEvent) -> AccountSelector:
        if event.credential_id is None:
            return PRIMARY
        return AccountSelector(credential_id=event.credential_id)

    async def create_event(
        self,
        user_id: str,
        calendar_id: str,
        draft: EventDraft,
        *,
        account: AccountSelector = PRIMARY,
    ) -> ExternalEvent:
        client = await self._client(user_id, account)
        remote = await client.create_event(calendar_id, draft)
        return await self._events.upsert(
            remote_to_external_event(
                remote,
                user_id=user_id,
                calendar_id=calendar_id,
                token=client.token,
                synced_at=self._clock(),
            )
        )

    async def update_event(
        self, user_id: str, event_id: uuid.UUID, draft: EventDraft
    ) -> ExternalEvent:
        local = await self._local_google_event(user_id, event_id)
        client = await self._client(user_id, self._selector_for(local))
        remote = await client.update_event(local.calendar_id, local.external_id, draft)
        return await self._events.upsert(
            remote_to_external_event(
                remote,
                user_id=user_id,
                calendar_id=local.calendar_id,
                token=client.token,
                synced_at=self._clock(),
            )
        )

    async def delete_event(self, user_id: str, event_id: uuid.UUID) -> None:
        """Delete remotely, then locally; an already-missing remote event still clears the row."""
        local = await self._local_google_event(user_id, event_id)
        client = await self._client(user_id, self._selector_for(local))
        try:
            await client.delete_event(local.calendar_id, local.external_id)
        except RemoteNotFoundError:
            logger.info("Remote event %s was already gone", local.external_id)
            await self._remove(user_id, [local], DeletionTrigger.REMOTE_NOT_FOUND)
            return
        await self._events.delete(user_id, [local.id])
