"""Task session and per-user time-manager state models."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(enum.StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    OVERRUN = "overrun"
    CANCELLED = "cancelled"


# Closed sessions whose actual duration counts as time spent on an event.
TIME_SPENT_STATUSES = (SessionStatus.COMPLETED, SessionStatus.PAUSED, SessionStatus.OVERRUN)


class TaskPriority(enum.StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskSession(BaseModel):
    """One continuous interval of declared work on a cached event."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str = Field(min_length=1)
    event_id: uuid.UUID
    start_time: datetime
    end_time: datetime | None = None
    estimated_duration: int | None = Field(default=None, ge=0)
    actual_duration: int | None = Field(default=None, ge=0)
    status: SessionStatus = SessionStatus.ACTIVE
    is_main_task: bool = True
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Preferences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    overrun_threshold: int = Field(default=60, gt=0)
    default_estimated_duration: int = Field(default=60, gt=0)
    auto_start_meetings: bool = True
    break_reminders: bool = True
    focus_mode: bool = False


class DailyStats(BaseModel):
    """Aggregates for one UTC day, in minutes. Only completions change them."""

    model_config = ConfigDict(extra="forbid")

    tasks_completed: int = 0
    total_time_spent: int = 0
    estimated_time: int = 0
    time_variance: int = 0

    def record_completion(self, actual: int, estimated: int | None) -> DailyStats:
        update: dict[str, int] = {
            "tasks_completed": self.tasks_completed + 1,
            "total_time_spent": self.total_time_spent + actual,
        }
        if estimated is not None:
            update["estimated_time"] = self.estimated_time + estimated
            update["time_variance"] = self.time_variance + (actual - estimated)
        return self.model_copy(update=update)


class TimeManagerState(BaseModel):
    """Per-user singleton: current pointers, daily statistics, preferences."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    current_main_task_id: uuid.UUID | None = None
    current_sub_tasks: list[uuid.UUID] = Field(default_factory=list)
    last_active_time: datetime | None = None
    daily_stats: dict[str, DailyStats] = Field(default_factory=dict)
    preferences: Preferences = Field(default_factory=Preferences)
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def stats_for(self, day: date) -> DailyStats:
        return self.daily_stats.get(day.isoformat(), DailyStats())

    def detach(self, session_id: uuid.UUID) -> None:
        """Drop *session_id* from the main pointer and the open sub-task set."""
        if self.current_main_task_id == session_id:
            self.current_main_task_id = None
        if session_id in self.current_sub_tasks:
            self.current_sub_tasks = [s for s in self.current_sub_tasks if s != session_id]


class TaskSuggestion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_id: uuid.UUID
    title: str
    start_at: datetime
    estimated_duration: int
    priority: TaskPriority
    can_start_early: bool
    minutes_until_start: int


class OverrunCheck(BaseModel):
    """Result of :meth:`TaskSessionEngine.check_for_overruns`.

    ``type="overrun"`` means the session was closed as Overrun;
    ``type="warning"`` is advisory and nothing was persisted.
    """

    model_config = ConfigDict(extra="forbid")

    type: Literal["overrun", "warning"]
    session: TaskSession
    elapsed_minutes: int
    estimated_duration: int
    threshold: int
    overrun_duration: int
    time_remaining: int | None = None
    suggestions: list[TaskSuggestion] = Field(default_factory=list)


class TimeSpent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_id: uuid.UUID
    total_minutes: int
    total_hours: float
    session_count: int
    sessions: list[TaskSession] = Field(default_factory=list)


class CurrentState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: TimeManagerState
    active_sessions: list[TaskSession] = Field(default_factory=list)
    current_session: TaskSession | None = None
    current_session_duration: int = 0
    has_active_task: bool = False
    is_overrun: bool = False


class DailyStatsView(BaseModel):
    model_config = ConfigDict(extra="forbid")

    day: date
    stats: DailyStats
    has_active_task: bool
    current_session_duration: int
