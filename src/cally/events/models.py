"""Local calendar cache models."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from cally.errors import CallyError, InvalidInputError, redact_secrets


class EventOrigin(enum.StrEnum):
    """Where a cached event came from (the ``event_type`` column)."""

    GOOGLE_CALENDAR = "google_calendar"
    JIRA_TASK = "jira_task"
    MANUAL = "manual"


class SyncStatus(enum.StrEnum):
    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"
    MANUAL = "manual"
    DELETED = "deleted"


class EventStatus(enum.StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    TODO = "todo"
    DONE = "done"


ORIGIN_COLORS: dict[EventOrigin, str] = {
    EventOrigin.GOOGLE_CALENDAR: "#4285f4",
    EventOrigin.JIRA_TASK: "#0052cc",
    EventOrigin.MANUAL: "#6b7280",
}


class Attendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1)
    display_name: str | None = None
    response_status: str | None = None
    optional: bool = False
    organizer: bool = False


class ExternalEvent(BaseModel):
    """One cached calendar entry, unique per (user_id, external_id, calendar_id)."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    event_type: EventOrigin
    credential_id: uuid.UUID | None = None
    account_name: str | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    location: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    status: EventStatus | None = None
    priority: str | None = None
    visibility: str | None = None
    recurrence_rule: str | None = None
    html_link: str | None = None
    color: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    sync_status: SyncStatus = SyncStatus.SYNCED
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _end_not_before_start(self) -> ExternalEvent:
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be earlier than start_at")
        return self

    @property
    def duration_minutes(self) -> int:
        return max(int((self.end_at - self.start_at).total_seconds() // 60), 0)

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.user_id, self.external_id, self.calendar_id)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)`` of timezone-aware datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise InvalidInputError("time window bounds must be timezone-aware")
        if self.start >= self.end:
            raise InvalidInputError(
                f"time window start {self.start.isoformat()} must be before "
                f"end {self.end.isoformat()}"
            )

    @classmethod
    def calendar_year(cls, now: datetime) -> TimeWindow:
        """January 1st of *now*'s year up to January 1st of the next year (UTC)."""
        year = now.astimezone(UTC).year
        return cls(datetime(year, 1, 1, tzinfo=UTC), datetime(year + 1, 1, 1, tzinfo=UTC))

    @classmethod
    def rest_of_day(cls, now: datetime) -> TimeWindow:
        """From *now* until the end of its UTC day."""
        current = now.astimezone(UTC)
        midnight = datetime.combine(current.date() + timedelta(days=1), time.min, tzinfo=UTC)
        return cls(current, midnight)

    @classmethod
    def utc_day(cls, now: datetime) -> TimeWindow:
        """The whole UTC calendar day containing *now*."""
        start = datetime.combine(now.astimezone(UTC).date(), time.min, tzinfo=UTC)
        return cls(start, start + timedelta(days=1))

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


class EventStats(BaseModel):
    """Counts over a user's live cached events."""

    model_config = ConfigDict(extra="forbid")

    total: int = 0
    today: int = 0
    upcoming: int = 0
    by_type: dict[EventOrigin, int] = Field(default_factory=dict)


class EventDraft(BaseModel):
    """Caller-supplied content for creating or replacing a remote event."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    timezone: str = "UTC"

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @model_validator(mode="after")
    def _end_not_before_start(self) -> EventDraft:
        if self.end_at < self.start_at:
            raise ValueError("end_at must not be earlier than start_at")
        return self


def parse_draft(data: dict[str, Any]) -> EventDraft:
    """Validate raw input into an :class:`EventDraft` or raise ``InvalidInputError``."""
    try:
        return EventDraft.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise InvalidInputError(
            f"Invalid event: {exc.error_count()} validation error(s)",
            fields=", ".join(fields),
        ) from exc


class ItemError(BaseModel):
    """One failed unit inside a batch operation."""

    model_config = ConfigDict(extra="forbid")

    external_id: str | None = None
    event_id: uuid.UUID | None = None
    error: str
    signal: str
    message: str

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        *,
        external_id: str | None = None,
        event_id: uuid.UUID | None = None,
    ) -> ItemError:
        signal = exc.signal if isinstance(exc, CallyError) else "error"
        return cls(
            external_id=external_id,
            event_id=event_id,
            error=type(exc).__name__,
            signal=signal,
            message=redact_secrets(str(exc))[:500],
        )
