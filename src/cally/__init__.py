"""Cally: calendar and issue-tracker sync with live task-session tracking."""

__version__ = "0.1.0"
