"""Local event cache: models, storage and the deletion policy."""

from __future__ import annotations

from .catalog import EventCatalog
from .deletion import DeletionAction, DeletionTrigger, deletion_action
from .models import (
    ORIGIN_COLORS,
    Attendee,
    EventDraft,
    EventOrigin,
    EventStats,
    EventStatus,
    ExternalEvent,
    ItemError,
    SyncStatus,
    TimeWindow,
    parse_draft,
)
from .store import EventRepository, EventStore

__all__ = [
    "ORIGIN_COLORS",
    "Attendee",
    "DeletionAction",
    "DeletionTrigger",
    "EventCatalog",
    "EventDraft",
    "EventOrigin",
    "EventRepository",
    "EventStats",
    "EventStatus",
    "EventStore",
    "ExternalEvent",
    "ItemError",
    "SyncStatus",
    "TimeWindow",
    "deletion_action",
    "parse_draft",
]
