"""Cross-provider status reconciliation and multi-account issue access.

Cached ``jira_task`` events mirror the status of their Jira issue.  The
per-origin deletion policy decides what happens when an issue vanishes
(soft delete) or reaches the "Done" category (hard delete).  Accounts are
processed sequentially and one account's failure never stops the others.
"""

from __future__ import annotations

import enum
import logging
import uuid
from datetime import datetime, timedelta

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, computed_field

from cally.clock import Clock, utc_now
from cally.credentials.manager import CredentialLifecycleManager
from cally.credentials.models import PRIMARY, AccountSelector, Credential, Provider
from cally.errors import (
    AuthenticationRequiredError,
    CallyError,
    EventNotFoundError,
    InvalidInputError,
    RemoteNotFoundError,
)
from cally.events.deletion import DeletionAction, DeletionTrigger, deletion_action
from cally.events.models import (
    ORIGIN_COLORS,
    EventOrigin,
    ExternalEvent,
    ItemError,
    SyncStatus,
)
from cally.events.store import EventRepository
from cally.providers.jira import (
    CreatedIssue,
    IssueDraft,
    IssueTransition,
    IssueTypeStatuses,
    JiraClient,
    JiraIssue,
    JiraProject,
    ProjectMetadata,
)

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer(__name__)

DEFAULT_ISSUE_BLOCK = timedelta(hours=1)


class IssueOutcome(enum.StrEnum):
    UPDATED = "updated"
    SOFT_DELETED = "soft_deleted"
    HARD_DELETED = "hard_deleted"
    KEPT = "kept"


class StatusReconcileResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    updated: list[ExternalEvent] = Field(default_factory=list)
    soft_deleted: list[ExternalEvent] = Field(default_factory=list)
    deleted_count: int = 0
    errors: list[ItemError] = Field(default_factory=list)

    @computed_field
    @property
    def partial_failure(self) -> bool:
        return bool(self.errors)


class AccountIssue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credential_id: uuid.UUID
    account_name: str | None = None
    site_url: str
    browse_url: str
    issue: JiraIssue


class FailedAccount(BaseModel):
    model_config = ConfigDict(extra="forbid")

    credential_id: uuid.UUID
    account_name: str | None = None
    error: str
    signal: str
    message: str
    requires_reconnection: bool


class MultiAccountIssues(BaseModel):
    model_config = ConfigDict(extra="forbid")

    issues: list[AccountIssue] = Field(default_factory=list)
    failed_accounts: list[FailedAccount] = Field(default_factory=list)
    accounts_total: int = 0

    @computed_field
    @property
    def partial_failure(self) -> bool:
        return bool(self.failed_accounts)


class TransitionOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid")

    outcome: IssueOutcome
    event: ExternalEvent | None = None
    issue: JiraIssue | None = None


class IssueCreation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    issue: CreatedIssue
    event: ExternalEvent | None = None


def issue_metadata(issue: JiraIssue, existing: dict | None = None) -> dict:
    metadata = dict(existing or {})
    metadata.update(
        {
            "issue_key": issue.key,
            "issue_status": issue.status_name,
            "status_category": issue.status_category_key,
            "issue_type": issue.issue_type,
            "project_key": issue.project_key,
            "due_date": issue.due_date.isoformat() if issue.due_date else None,
        }
    )
    return {key: value for key, value in metadata.items() if value is not None}


class IssueStatusReconciler:
    """Mirrors Jira issue state into cached ``jira_task`` calendar entries."""

    def __init__(
        self,
        events: EventRepository,
        credentials: CredentialLifecycleManager,
        http_client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
        page_size: int = 50,
    ) -> None:
        self._events = events
        self._credentials = credentials
        self._http_client = http_client
        self._clock = clock
        self._page_size = page_size

    async def _client(self, user_id: str, selector: AccountSelector) -> JiraClient:
        token = await self._credentials.get_valid_token(user_id, Provider.JIRA, selector)
        return JiraClient(self._http_client, token)

    @staticmethod
    def _selector_for(event: ExternalEvent) -> AccountSelector:
        if event.credential_id is None:
            return PRIMARY
        return AccountSelector(credential_id=event.credential_id)

    # ------------------------------------------------------------------
    # reconcileIssueStatuses
    # ------------------------------------------------------------------

    async def reconcile_issue_statuses(self, user_id: str) -> StatusReconcileResult:
        """Refresh every live ``jira_task`` event from its issue.

        Never raises for a single event or account: failures are collected
        in ``errors`` and the pass always completes.
        """
        result = StatusReconcileResult()
        with _tracer.start_as_current_span("cally.sync.reconcile_issue_statuses") as span:
            events = await self._events.list_by_origin(user_id, EventOrigin.JIRA_TASK)
            groups: dict[uuid.UUID | None, list[ExternalEvent]] = {}
            for event in events:
                groups.setdefault(event.credential_id, []).append(event)

            for credential_id, group in groups.items():
                selector = (
                    AccountSelector(credential_id=credential_id) if credential_id else PRIMARY
                )
                try:
                    client = await self._client(user_id, selector)
                except CallyError as exc:
                    logger.warning(
                        "Cannot reconcile %d issue event(s) of %s: %s",
                        len(group),
                        selector.describe(),
                        exc,
                    )
                    result.errors.extend(
                        ItemError.from_exception(exc, external_id=e.external_id, event_id=e.id)
                        for e in group
                    )
                    continue

                for event in group:
                    try:
                        await self._reconcile_one(client, event, result)
                    except Exception as exc:
                        logger.warning("Failed to reconcile issue %s: %s", event.external_id, exc)
                        result.errors.append(
                            ItemError.from_exception(
                                exc, external_id=event.external_id, event_id=event.id
                            )
                        )

            span.set_attribute("cally.updated", len(result.updated))
            span.set_attribute("cally.deleted", result.deleted_count)
            span.set_attribute("cally.errors", len(result.errors))

        logger.info(
            "Issue status reconcile for user %s: %d updated, %d deleted, %d soft-deleted, "
            "%d errors",
            user_id,
            len(result.updated),
            result.deleted_count,
            len(result.soft_deleted),
            len(result.errors),
        )
        return result

    async def _reconcile_one(
        self, client: JiraClient, event: ExternalEvent, result: StatusReconcileResult
    ) -> None:
        issue = await client.get_issue(event.external_id)
        outcome, stored = await self._apply_issue_state(event, issue)
        if outcome is IssueOutcome.UPDATED and stored is not None:
            result.updated.append(stored)
        elif outcome is IssueOutcome.SOFT_DELETED:
            result.soft_deleted.append(event)
        elif outcome is IssueOutcome.HARD_DELETED:
            result.deleted_count += 1

    async def _apply_issue_state(
        self, event: ExternalEvent, issue: JiraIssue | None
    ) -> tuple[IssueOutcome, ExternalEvent | None]:
        now = self._clock()
        trigger: DeletionTrigger | None = None
        if issue is None:
            trigger = DeletionTrigger.REMOTE_NOT_FOUND
        elif issue.is_done:
            trigger = DeletionTrigger.REMOTE_DONE

        if trigger is not None:
            action = deletion_action(event.event_type, trigger)
            if action is DeletionAction.HARD_DELETE:
                await self._events.delete(event.user_id, [event.id])
                logger.info(
                    "Removed %s event for %s (%s)", event.event_type, event.external_id, trigger
                )
                return IssueOutcome.HARD_DELETED, None
            if action is DeletionAction.SOFT_DELETE:
                await self._events.mark_sync_status(
                    event.user_id, event.id, SyncStatus.DELETED, at=now
                )
                return IssueOutcome.SOFT_DELETED, None

        if issue is None:
            return IssueOutcome.KEPT, event
        refreshed = event.model_copy(
            update={
                "title": issue.display_title,
                "description": issue.description,
                "status": issue.event_status,
                "priority": issue.priority,
                "metadata": issue_metadata(issue, event.metadata),
                "sync_status": SyncStatus.SYNCED,
                "last_sync_at": now,
            }
        )
        return IssueOutcome.UPDATED, await self._events.upsert(refreshed)

    # ------------------------------------------------------------------
    # Multi-account fetch
    # ------------------------------------------------------------------

    async def fetch_assigned_issues(
        self,
        user_id: str,
        *,
        exclude_done: bool = True,
        status: str | None = None,
        max_results: int | None = None,
    ) -> MultiAccountIssues:
        """Assigned issues across every connected Jira account.

        Raises
        ------
        AuthenticationRequiredError
            The user has no active Jira account at all.
        """
        accounts = await self._credentials.active_accounts(user_id, Provider.JIRA)
        if not accounts:
            raise AuthenticationRequiredError(
                "No Jira account connected", provider=Provider.JIRA.value, reason="not_connected"
            )

        result = MultiAccountIssues(accounts_total=len(accounts))
        for account in accounts:
            try:
                client = await self._client(user_id, AccountSelector(credential_id=account.id))
                issues = await client.search_assigned_issues(
                    exclude_done=exclude_done,
                    status=status,
                    max_results=max_results or self._page_size,
                )
            except Exception as exc:
                logger.warning("Jira account %s failed: %s", account.id, exc)
                result.failed_accounts.append(self._failed_account(account, exc))
                continue
            result.issues.extend(
                AccountIssue(
                    credential_id=account.id,
                    account_name=account.account_name,
                    site_url=client.site.site_url,
                    browse_url=client.browse_url(issue.key),
                    issue=issue,
                )
                for issue in issues
            )
        return result

    @staticmethod
    def _failed_account(account: Credential, exc: Exception) -> FailedAccount:
        item = ItemError.from_exception(exc)
        return FailedAccount(
            credential_id=account.id,
            account_name=account.account_name,
            error=item.error,
            signal=item.signal,
            message=item.message,
            requires_reconnection=isinstance(exc, AuthenticationRequiredError),
        )

    # ------------------------------------------------------------------
    # Linking and transitions
    # ------------------------------------------------------------------

    async def link_issue(
        self,
        user_id: str,
        issue_key: str,
        start_at: datetime,
        end_at: datetime | None = None,
        *,
        account: AccountSelector = PRIMARY,
    ) -> ExternalEvent:
        """Place an issue on the calendar as a ``jira_task`` event."""
        end_at = end_at or start_at + DEFAULT_ISSUE_BLOCK
        if end_at < start_at:
            raise InvalidInputError("end_at must not be earlier than start_at")

        client = await self._client(user_id, account)
        issue = await client.get_issue(issue_key)
        if issue is None:
            raise RemoteNotFoundError(f"Jira issue {issue_key} not found", provider="jira")

        event = ExternalEvent(
            user_id=user_id,
            external_id=issue.key,
            calendar_id=issue.project_key or "jira",
            event_type=EventOrigin.JIRA_TASK,
            credential_id=client.token.credential_id,
            account_name=client.token.account_name,
            title=issue.display_title,
            description=issue.description,
            start_at=start_at,
            end_at=end_at,
            status=issue.event_status,
            priority=issue.priority,
            html_link=client.browse_url(issue.key),
            color=ORIGIN_COLORS[EventOrigin.JIRA_TASK],
            metadata=issue_metadata(issue),
            sync_status=SyncStatus.SYNCED,
            last_sync_at=self._clock(),
        )
        return await self._events.upsert(event)

    async def _local_issue_event(self, user_id: str, event_id: uuid.UUID) -> ExternalEvent:
        event = await self._events.get(user_id, event_id)
        if event is None:
            raise EventNotFoundError(f"Event {event_id} not found", event_id=str(event_id))
        if event.event_type is not EventOrigin.JIRA_TASK:
            raise InvalidInputError(f"Event {event_id} is not linked to a Jira issue")
        return event

    async def list_issue_transitions(
        self, user_id: str, event_id: uuid.UUID
    ) -> list[IssueTransition]:
        event = await self._local_issue_event(user_id, event_id)
        client = await self._client(user_id, self._selector_for(event))
        return await client.list_transitions(event.external_id)

    async def transition_issue(
        self, user_id: str, event_id: uuid.UUID, transition_id: str
    ) -> TransitionOutcome:
        """Apply a Jira transition, then mirror the resulting issue state locally."""
        event = await self._local_issue_event(user_id, event_id)
        client = await self._client(user_id, self._selector_for(event))
        await client.apply_transition(event.external_id, transition_id)
        issue = await client.get_issue(event.external_id)
        outcome, stored = await self._apply_issue_state(event, issue)
        return TransitionOutcome(outcome=outcome, event=stored, issue=issue)

    # ------------------------------------------------------------------
    # Projects and issue creation
    # ------------------------------------------------------------------

    async def list_projects(
        self, user_id: str, *, account: AccountSelector = PRIMARY
    ) -> list[JiraProject]:
        client = await self._client(user_id, account)
        return await client.list_projects()

    async def project_metadata(
        self, user_id: str, project_key: str, *, account: AccountSelector = PRIMARY
    ) -> ProjectMetadata:
        client = await self._client(user_id, account)
        return await client.project_metadata(project_key)

    async def project_workflows(
        self, user_id: str, project_key: str, *, account: AccountSelector = PRIMARY
    ) -> list[IssueTypeStatuses]:
        client = await self._client(user_id, account)
        return await client.project_workflows(project_key)

    async def create_issue(
        self,
        user_id: str,
        draft: IssueDraft,
        *,
        account: AccountSelector = PRIMARY,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> IssueCreation:
        """Create a Jira issue and, when *start_at* is given, schedule it on the calendar."""
        if start_at is not None and end_at is not None and end_at < start_at:
            raise InvalidInputError("end_at must not be earlier than start_at")
        client = await self._client(user_id, account)
        created = await client.create_issue(draft)
        if start_at is None:
            return IssueCreation(issue=created)
        event = await self.link_issue(
            user_id,
            created.key,
            start_at,
            end_at,
            account=AccountSelector(credential_id=client.token.credential_id),
        )
        return IssueCreation(issue=created, event=event)
