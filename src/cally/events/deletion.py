"""Per-origin deletion policy.

Every decision to drop a cached event goes through :func:`deletion_action`,
so the rules live in one table instead of scattered conditionals.
"""

from __future__ import annotations

import enum

from cally.events.models import EventOrigin


class DeletionTrigger(enum.StrEnum):
    ABSENT_FROM_LISTING = "absent_from_listing"
    REMOTE_NOT_FOUND = "remote_not_found"
    REMOTE_DONE = "remote_done"


class DeletionAction(enum.StrEnum):
    HARD_DELETE = "hard_delete"
    SOFT_DELETE = "soft_delete"
    KEEP = "keep"


_POLICY: dict[tuple[EventOrigin, DeletionTrigger], DeletionAction] = {
    (EventOrigin.GOOGLE_CALENDAR, DeletionTrigger.ABSENT_FROM_LISTING): DeletionAction.HARD_DELETE,
    (EventOrigin.GOOGLE_CALENDAR, DeletionTrigger.REMOTE_NOT_FOUND): DeletionAction.HARD_DELETE,
    (EventOrigin.GOOGLE_CALENDAR, DeletionTrigger.REMOTE_DONE): DeletionAction.KEEP,
    (EventOrigin.JIRA_TASK, DeletionTrigger.ABSENT_FROM_LISTING): DeletionAction.HARD_DELETE,
    # Vanished issues stay as history rows.
    (EventOrigin.JIRA_TASK, DeletionTrigger.REMOTE_NOT_FOUND): DeletionAction.SOFT_DELETE,
    (EventOrigin.JIRA_TASK, DeletionTrigger.REMOTE_DONE): DeletionAction.HARD_DELETE,
}


def deletion_action(origin: EventOrigin, trigger: DeletionTrigger) -> DeletionAction:
    """Return what to do with a cached event of *origin* when *trigger* fires.

    Manually created events are never removed by synchronization.
    """
    return _POLICY.get((origin, trigger), DeletionAction.KEEP)
