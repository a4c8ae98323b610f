"""Task sessions tracked against cached events."""

from cally.timemanager.engine import TaskSessionEngine, suggestion_priority
from cally.timemanager.models import (
    CurrentState,
    DailyStats,
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
from cally.timemanager.store import TIME_MANAGER_DDL, SessionRepository, SessionStore

__all__ = [
    "TIME_MANAGER_DDL",
    "CurrentState",
    "DailyStats",
    "DailyStatsView",
    "OverrunCheck",
    "Preferences",
    "SessionRepository",
    "SessionStatus",
    "SessionStore",
    "TaskPriority",
    "TaskSession",
    "TaskSuggestion",
    "TaskSessionEngine",
    "TimeManagerState",
    "TimeSpent",
    "suggestion_priority",
]
