"""Reconciliation of the local event cache against remote providers."""

from __future__ import annotations

from .calendar import AllCalendarsResult, CalendarReconciler, ReconcileResult
from .issues import (
    AccountIssue,
    FailedAccount,
    IssueStatusReconciler,
    MultiAccountIssues,
    StatusReconcileResult,
    TransitionOutcome,
)

__all__ = [
    "AccountIssue",
    "AllCalendarsResult",
    "CalendarReconciler",
    "FailedAccount",
    "IssueStatusReconciler",
    "MultiAccountIssues",
    "ReconcileResult",
    "StatusReconcileResult",
    "TransitionOutcome",
]
