"""Task session state machine.

Sessions move Active -> {Paused, Completed, Overrun, Cancelled} and
Paused -> Cancelled; nothing leaves a terminal state.  Every mutation for a
user runs under that user's lock, session closes are conditional on the
expected status, and the per-user state row is written compare-and-set so
parallel processes cannot interleave a lost update.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError

from cally.clock import Clock, minutes_between, utc_now
from cally.config import TimeManagerConfig
from cally.errors import (
    ConcurrentUpdateError,
    EventNotFoundError,
    InvalidInputError,
    SessionNotFoundError,
    StateConflictError,
)
from cally.events.models import ExternalEvent, TimeWindow
from cally.events.store import EventRepository
from cally.timemanager.models import (
    TIME_SPENT_STATUSES,
    CurrentState,
    DailyStatsView,
    OverrunCheck,
    Preferences,
    SessionStatus,
    TaskPriority,
    TaskSession,
    TaskSuggestion,
    TimeManagerState,
    TimeSpent,
)
from cally.timemanager.store import SessionRepository

logger = logging.getLogger(__name__)

_ACTIVE = (SessionStatus.ACTIVE,)
_CANCELLABLE = (SessionStatus.ACTIVE, SessionStatus.PAUSED)


def suggestion_priority(minutes_until_start: float) -> TaskPriority:
    """Bucket an upcoming event by how soon it starts."""
    hours = minutes_until_start / 60
    if hours < 0.5:
        return TaskPriority.URGENT
    if hours < 2:
        return TaskPriority.HIGH
    if hours < 4:
        return TaskPriority.MEDIUM
    return TaskPriority.LOW


def _day_key(moment: datetime) -> date:
    return moment.astimezone(UTC).date()


class TaskSessionEngine:
    """Tracks work sessions against cached events for each user.

    Parameters
    ----------
    sessions:
        Session and per-user state storage.
    events:
        Cached events; a session may only start against an event found here.
    clock:
        Time source, injectable for tests.
    config:
        Defaults applied when a user's state is first created.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        events: EventRepository,
        *,
        clock: Clock = utc_now,
        config: TimeManagerConfig | None = None,
    ) -> None:
        self._sessions = sessions
        self._events = events
        self._clock = clock
        self._config = config or TimeManagerConfig()
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    def default_preferences(self) -> Preferences:
        return Preferences(
            overrun_threshold=self._config.overrun_threshold_minutes,
            default_estimated_duration=self._config.default_estimated_minutes,
        )

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    async def _load_state(self, user_id: str) -> TimeManagerState:
        defaults = TimeManagerState(user_id=user_id, preferences=self.default_preferences())
        return await self._sessions.load_state(user_id, defaults=defaults)

    async def _commit(
        self,
        state: TimeManagerState,
        mutate: Callable[[TimeManagerState], None],
    ) -> TimeManagerState:
        """Apply *mutate* and save; on a lost race re-read and re-apply once."""
        mutate(state)
        try:
            return await self._sessions.save_state(state)
        except ConcurrentUpdateError:
            logger.info("State for user %s changed concurrently; re-applying", state.user_id)
            fresh = await self._load_state(state.user_id)
            mutate(fresh)
            return await self._sessions.save_state(fresh)

    async def _require_session(self, user_id: str, session_id: uuid.UUID) -> TaskSession:
        session = await self._sessions.get_session(user_id, session_id)
        if session is None:
            raise SessionNotFoundError(
                "Task session not found", session_id=str(session_id), user_id=user_id
            )
        return session

    async def _close(
        self,
        session: TaskSession,
        status: SessionStatus,
        now: datetime,
        *,
        expected: tuple[SessionStatus, ...] = _ACTIVE,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TaskSession:
        if session.status is SessionStatus.ACTIVE:
            end_time: datetime | None = now
            actual: int | None = minutes_between(session.start_time, now)
        else:
            # A paused session already carries its final duration.
            end_time, actual = session.end_time, session.actual_duration
        closed = await self._sessions.close_session(
            session.user_id,
            session.id,
            expected=expected,
            status=status,
            end_time=end_time,
            actual_duration=actual,
            notes=notes if notes is not None else session.notes,
            metadata={**session.metadata, **(metadata or {})},
        )
        if closed is None:
            raise StateConflictError(
                "Task session changed state concurrently",
                session_id=str(session.id),
                target_status=status.value,
            )
        return closed

    def _require_status(
        self, session: TaskSession, allowed: tuple[SessionStatus, ...], action: str
    ) -> None:
        if session.status not in allowed:
            raise StateConflictError(
                f"Cannot {action} a {session.status.value} task session",
                session_id=str(session.id),
                status=session.status.value,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start_task(
        self,
        user_id: str,
        event_id: uuid.UUID,
        *,
        is_main_task: bool = True,
        estimated_duration: int | None = None,
        notes: str | None = None,
    ) -> TaskSession:
        """Start a session on *event_id*.

        Starting a main task pauses whatever main task was active, so at most
        one main-task session is Active per user.
        """
        if estimated_duration is not None and estimated_duration < 0:
            raise InvalidInputError(
                "estimated_duration must be a non-negative number of minutes",
                estimated_duration=estimated_duration,
            )
        async with self._lock(user_id):
            event = await self._events.get(user_id, event_id)
            if event is None:
                raise EventNotFoundError(
                    "Event not found", event_id=str(event_id), user_id=user_id
                )
            state = await self._load_state(user_id)
            now = self._clock()

            paused: list[uuid.UUID] = []
            if is_main_task:
                for active in await self._sessions.list_sessions(user_id, statuses=_ACTIVE):
                    if not active.is_main_task:
                        continue
                    await self._close(
                        active,
                        SessionStatus.PAUSED,
                        now,
                        metadata={"paused_at": now.isoformat(), "paused_reason": "switched"},
                    )
                    paused.append(active.id)
                    logger.info("Paused main task session %s for user %s", active.id, user_id)

            session = await self._sessions.create_session(
                TaskSession(
                    user_id=user_id,
                    event_id=event.id,
                    start_time=now,
                    estimated_duration=estimated_duration,
                    status=SessionStatus.ACTIVE,
                    is_main_task=is_main_task,
                    notes=notes,
                    metadata={
                        "started_early": now < event.start_at,
                        "original_start_time": event.start_at.isoformat(),
                    },
                )
            )

            def attach(target: TimeManagerState) -> None:
                for session_id in paused:
                    target.detach(session_id)
                if is_main_task:
                    target.current_main_task_id = session.id
                elif session.id not in target.current_sub_tasks:
                    target.current_sub_tasks = [*target.current_sub_tasks, session.id]
                target.last_active_time = now

            try:
                await self._commit(state, attach)
            except ConcurrentUpdateError:
                await self._close(
                    session,
                    SessionStatus.CANCELLED,
                    now,
                    metadata={"cancelled_at": now.isoformat(), "cancel_reason": "state_conflict"},
                )
                raise StateConflictError(
                    "Time manager state changed concurrently; task was not started",
                    user_id=user_id,
                    event_id=str(event_id),
                ) from None

        logger.info(
            "Started %s task session %s on event %s for user %s",
            "main" if is_main_task else "sub",
            session.id,
            event.id,
            user_id,
        )
        return session

    async def switch_task(
        self,
        user_id: str,
        event_id: uuid.UUID,
        *,
        estimated_duration: int | None = None,
        notes: str | None = None,
    ) -> TaskSession:
        """Pause the current main task and start *event_id* as the new one."""
        return await self.start_task(
            user_id,
            event_id,
            is_main_task=True,
            estimated_duration=estimated_duration,
            notes=notes,
        )

    async def pause_task(self, user_id: str, session_id: uuid.UUID) -> TaskSession:
        async with self._lock(user_id):
            session = await self._require_session(user_id, session_id)
            self._require_status(session, _ACTIVE, "pause")
            state = await self._load_state(user_id)
            now = self._clock()
            paused = await self._close(
                session, SessionStatus.PAUSED, now, metadata={"paused_at": now.isoformat()}
            )

            def detach(target: TimeManagerState) -> None:
                target.detach(session.id)
                target.last_active_time = now

            await self._commit(state, detach)
        logger.info("Paused task session %s for user %s", session_id, user_id)
        return paused

    async def complete_task(
        self,
        user_id: str,
        session_id: uuid.UUID,
        *,
        notes: str | None = None,
        rating: int | None = None,
    ) -> TaskSession:
        """Close an Active session as Completed and fold it into today's stats."""
        if rating is not None and not 1 <= rating <= 5:
            raise InvalidInputError("rating must be between 1 and 5", rating=rating)
        async with self._lock(user_id):
            session = await self._require_session(user_id, session_id)
            self._require_status(session, _ACTIVE, "complete")
            state = await self._load_state(user_id)
            now = self._clock()
            extra: dict[str, Any] = {"completed_at": now.isoformat()}
            if rating is not None:
                extra["rating"] = rating
            completed = await self._close(
                session, SessionStatus.COMPLETED, now, notes=notes, metadata=extra
            )
            actual = completed.actual_duration or 0
            day = _day_key(now)

            def record(target: TimeManagerState) -> None:
                target.detach(session.id)
                target.daily_stats[day.isoformat()] = target.stats_for(day).record_completion(
                    actual, session.estimated_duration
                )
                target.last_active_time = now

            await self._commit(state, record)
        logger.info(
            "Completed task session %s for user %s after %d minutes", session_id, user_id, actual
        )
        return completed

    async def cancel_task(self, user_id: str, session_id: uuid.UUID) -> TaskSession:
        async with self._lock(user_id):
            session = await self._require_session(user_id, session_id)
            self._require_status(session, _CANCELLABLE, "cancel")
            state = await self._load_state(user_id)
            now = self._clock()
            cancelled = await self._close(
                session,
                SessionStatus.CANCELLED,
                now,
                expected=_CANCELLABLE,
                metadata={"cancelled_at": now.isoformat()},
            )

            def detach(target: TimeManagerState) -> None:
                target.detach(session.id)
                target.last_active_time = now

            await self._commit(state, detach)
        logger.info("Cancelled task session %s for user %s", session_id, user_id)
        return cancelled

    # ------------------------------------------------------------------
    # Overruns and suggestions
    # ------------------------------------------------------------------

    def _estimate_for(self, session: TaskSession, preferences: Preferences) -> int:
        if session.estimated_duration is not None:
            return session.estimated_duration
        return preferences.default_estimated_duration

    async def check_for_overruns(self, user_id: str) -> OverrunCheck | None:
        """Inspect the current main task against its estimate.

        Past ``estimate + threshold`` the session is closed as Overrun and
        next-task suggestions are attached.  Past the estimate alone only a
        warning is returned and nothing is persisted.
        """
        tracer = trace.get_tracer("cally")
        with tracer.start_as_current_span("cally.timemanager.check_for_overruns") as span:
            span.set_attribute("cally.user_id", user_id)
            async with self._lock(user_id):
                state = await self._load_state(user_id)
                if state.current_main_task_id is None:
                    return None
                session = await self._sessions.get_session(user_id, state.current_main_task_id)
                if session is None or session.status is not SessionStatus.ACTIVE:
                    return None

                now = self._clock()
                elapsed = minutes_between(session.start_time, now)
                estimated = self._estimate_for(session, state.preferences)
                threshold = state.preferences.overrun_threshold
                over_by = elapsed - estimated

                if elapsed > estimated + threshold:
                    closed = await self._close(
                        session,
                        SessionStatus.OVERRUN,
                        now,
                        metadata={
                            "overrun_detected_at": now.isoformat(),
                            "overrun_duration": over_by,
                        },
                    )

                    def detach(target: TimeManagerState) -> None:
                        target.detach(session.id)
                        target.last_active_time = now

                    await self._commit(state, detach)
                    span.set_attribute("cally.overrun_minutes", over_by)
                    logger.warning(
                        "Task session %s for user %s overran its estimate by %d minutes",
                        session.id,
                        user_id,
                        over_by,
                    )
                    suggestions = await self._suggestions(
                        user_id, now, self._config.suggestion_limit, state.preferences
                    )
                    return OverrunCheck(
                        type="overrun",
                        session=closed,
                        elapsed_minutes=elapsed,
                        estimated_duration=estimated,
                        threshold=threshold,
                        overrun_duration=over_by,
                        suggestions=suggestions,
                    )

                if elapsed > estimated:
                    return OverrunCheck(
                        type="warning",
                        session=session,
                        elapsed_minutes=elapsed,
                        estimated_duration=estimated,
                        threshold=threshold,
                        overrun_duration=over_by,
                        time_remaining=threshold - over_by,
                    )
                return None

    async def get_next_task_suggestions(
        self, user_id: str, *, limit: int | None = None
    ) -> list[TaskSuggestion]:
        """Upcoming events for the rest of the UTC day without an active session."""
        limit = self._config.suggestion_limit if limit is None else limit
        if limit <= 0:
            raise InvalidInputError("limit must be positive", limit=limit)
        state = await self._load_state(user_id)
        return await self._suggestions(user_id, self._clock(), limit, state.preferences)

    async def _suggestions(
        self, user_id: str, now: datetime, limit: int, preferences: Preferences
    ) -> list[TaskSuggestion]:
        active = await self._sessions.list_sessions(user_id, statuses=_ACTIVE)
        busy = {session.event_id for session in active}
        upcoming = await self._events.list_upcoming(
            user_id, TimeWindow.rest_of_day(now), limit=limit + len(busy)
        )
        return [
            self._suggest(event, now, preferences)
            for event in upcoming
            if event.id not in busy
        ][:limit]

    def _suggest(
        self, event: ExternalEvent, now: datetime, preferences: Preferences
    ) -> TaskSuggestion:
        minutes_until = (event.start_at - now).total_seconds() / 60
        return TaskSuggestion(
            event_id=event.id,
            title=event.title,
            start_at=event.start_at,
            estimated_duration=event.duration_minutes or preferences.default_estimated_duration,
            priority=suggestion_priority(minutes_until),
            can_start_early=event.start_at > now,
            minutes_until_start=max(int(minutes_until), 0),
        )

    # ------------------------------------------------------------------
    # Queries and preferences
    # ------------------------------------------------------------------

    async def get_time_spent(self, user_id: str, event_id: uuid.UUID) -> TimeSpent:
        """Total closed-session minutes recorded against *event_id*."""
        sessions = await self._sessions.list_sessions(
            user_id, statuses=TIME_SPENT_STATUSES, event_id=event_id
        )
        total = sum(session.actual_duration or 0 for session in sessions)
        return TimeSpent(
            event_id=event_id,
            total_minutes=total,
            total_hours=round(total / 60, 2),
            session_count=len(sessions),
            sessions=sessions,
        )

    async def get_current_state(self, user_id: str) -> CurrentState:
        state = await self._load_state(user_id)
        active = await self._sessions.list_sessions(user_id, statuses=_ACTIVE)
        current = next(
            (session for session in active if session.id == state.current_main_task_id), None
        )
        duration = 0
        is_overrun = False
        if current is not None:
            duration = minutes_between(current.start_time, self._clock())
            estimated = self._estimate_for(current, state.preferences)
            is_overrun = duration > estimated + state.preferences.overrun_threshold
        return CurrentState(
            state=state,
            active_sessions=active,
            current_session=current,
            current_session_duration=duration,
            has_active_task=current is not None,
            is_overrun=is_overrun,
        )

    async def get_daily_stats(self, user_id: str, day: date | None = None) -> DailyStatsView:
        current = await self.get_current_state(user_id)
        day = day or _day_key(self._clock())
        return DailyStatsView(
            day=day,
            stats=current.state.stats_for(day),
            has_active_task=current.has_active_task,
            current_session_duration=current.current_session_duration,
        )

    async def update_preferences(self, user_id: str, changes: dict[str, Any]) -> Preferences:
        async with self._lock(user_id):
            state = await self._load_state(user_id)
            try:
                merged = Preferences.model_validate(
                    {**state.preferences.model_dump(), **changes}
                )
            except ValidationError as exc:
                raise InvalidInputError(
                    "Invalid time manager preferences", detail=str(exc.errors()[0]["msg"])
                ) from exc

            def apply(target: TimeManagerState) -> None:
                target.preferences = merged

            saved = await self._commit(state, apply)
        logger.info("Updated time manager preferences for user %s", user_id)
        return saved.preferences
