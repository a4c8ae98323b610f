"""Remote calendar and issue-tracker API clients."""
