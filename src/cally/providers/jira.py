"""Jira Cloud REST client (OAuth 2.0 / api.atlassian.com gateway)."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cally.credentials.models import AccessToken, AccountProfile, JiraMeta
from cally.errors import (
    AuthenticationRequiredError,
    InvalidInputError,
    RemoteNotFoundError,
    TransientFailureError,
)
from cally.events.models import EventStatus
from cally.providers.base import BearerApiClient, raise_for_remote_status, safe_error_message

logger = logging.getLogger(__name__)

ATLASSIAN_API_BASE_URL = "https://api.atlassian.com"
JIRA_API_BASE_URL = ATLASSIAN_API_BASE_URL + "/ex/jira/{cloud_id}/rest/api/3"
ATLASSIAN_ME_URL = ATLASSIAN_API_BASE_URL + "/me"
ATLASSIAN_ACCESSIBLE_RESOURCES_URL = ATLASSIAN_API_BASE_URL + "/oauth/token/accessible-resources"

DONE_CATEGORY_KEY = "done"

ISSUE_FIELDS = (
    "summary",
    "status",
    "priority",
    "issuetype",
    "project",
    "description",
    "duedate",
    "created",
    "updated",
    "assignee",
)

_PRIORITY_NAMES = {
    "highest": "highest",
    "high": "high",
    "medium": "medium",
    "low": "low",
    "lowest": "lowest",
}

_CATEGORY_STATUS = {
    "new": EventStatus.TODO,
    "indeterminate": EventStatus.IN_PROGRESS,
    DONE_CATEGORY_KEY: EventStatus.DONE,
}


class JiraIssue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str = Field(min_length=1)
    issue_id: str | None = None
    summary: str
    description: str | None = None
    status_name: str | None = None
    status_category_key: str | None = None
    status_category_name: str | None = None
    priority: str = "medium"
    issue_type: str | None = None
    project_key: str | None = None
    project_name: str | None = None
    assignee_name: str | None = None
    due_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_done(self) -> bool:
        """True when the issue sits in Jira's terminal "Done" status category."""
        if self.status_category_key is not None:
            return self.status_category_key.lower() == DONE_CATEGORY_KEY
        return (self.status_category_name or "").casefold() == "done"

    @property
    def event_status(self) -> EventStatus:
        return _CATEGORY_STATUS.get((self.status_category_key or "").lower(), EventStatus.TODO)

    @property
    def display_title(self) -> str:
        return f"{self.key}: {self.summary}"


class IssueTransition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transition_id: str = Field(min_length=1)
    name: str
    to_status: str | None = None
    to_category_key: str | None = None


class JiraProject(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str
    key: str = Field(min_length=1)
    name: str
    description: str | None = None
    project_type: str | None = None
    lead_name: str | None = None


class IssueTypeInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type_id: str
    name: str
    description: str | None = None
    subtask: bool = False


class PriorityOption(BaseModel):
    model_config = ConfigDict(extra="forbid")

    priority_id: str
    name: str


class AssignableUser(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str
    display_name: str | None = None
    email: str | None = None


class ProjectMetadata(BaseModel):
    """What a create-issue form needs for one project."""

    model_config = ConfigDict(extra="forbid")

    project_id: str
    key: str
    name: str
    issue_types: list[IssueTypeInfo] = Field(default_factory=list)
    priorities: list[PriorityOption] = Field(default_factory=list)
    assignable_users: list[AssignableUser] = Field(default_factory=list)


class IssueTypeStatuses(BaseModel):
    model_config = ConfigDict(extra="forbid")

    issue_type: str
    statuses: list[str] = Field(default_factory=list)


class IssueDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_key: str
    summary: str
    issue_type: str
    description: str | None = None
    priority: str | None = None
    assignee: str | None = None

    @field_validator("project_key", "summary", "issue_type")
    @classmethod
    def _required_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must be a non-empty string")
        return normalized

    @field_validator("description", "priority", "assignee")
    @classmethod
    def _optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    def to_fields(self) -> dict[str, Any]:
        """The ``fields`` object of a Jira create-issue request."""
        fields: dict[str, Any] = {
            "project": {"key": self.project_key},
            "summary": self.summary,
            "issuetype": {"name": self.issue_type},
        }
        if self.description is not None:
            fields["description"] = {
                "type": "doc",
                "version": 1,
                "content": [
                    {"type": "paragraph", "content": [{"type": "text", "text": self.description}]}
                ],
            }
        if self.priority is not None:
            fields["priority"] = {"name": self.priority}
        if self.assignee is not None:
            key = "emailAddress" if "@" in self.assignee else "accountId"
            fields["assignee"] = {key: self.assignee}
        return fields


def parse_issue_draft(data: dict[str, Any]) -> IssueDraft:
    """Validate raw input into an :class:`IssueDraft` or raise ``InvalidInputError``."""
    try:
        return IssueDraft.model_validate(data)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise InvalidInputError(
            f"Invalid issue: {exc.error_count()} validation error(s)",
            fields=", ".join(fields),
        ) from exc


class CreatedIssue(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    issue_id: str | None = None
    browse_url: str
    draft: IssueDraft


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def adf_to_text(node: Any) -> str:
    """Flatten an Atlassian Document Format tree into plain text."""
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return "".join(adf_to_text(child) for child in node)
    if not isinstance(node, dict):
        return ""

    node_type = node.get("type")
    if node_type == "text":
        text = node.get("text")
        return text if isinstance(text, str) else ""
    if node_type == "hardBreak":
        return "\n"

    inner = adf_to_text(node.get("content"))
    if node_type in ("paragraph", "heading", "listItem", "codeBlock", "blockquote"):
        return f"{inner}\n"
    return inner


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _nested_text(payload: Any, *keys: str) -> str | None:
    current = payload
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return _text(current)


def _parse_jira_datetime(value: Any) -> datetime | None:
    text = _text(value)
    if text is None:
        return None
    # Jira emits offsets without a colon, e.g. 2024-05-01T09:30:00.000+0000
    if len(text) >= 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_jira_date(value: Any) -> date | None:
    text = _text(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def normalize_priority(name: str | None) -> str:
    if name is None:
        return "medium"
    return _PRIORITY_NAMES.get(name.strip().lower(), "medium")


def parse_jira_issue(payload: dict[str, Any]) -> JiraIssue:
    """Normalize a Jira issue payload; raises ``ValueError`` without a key."""
    key = _text(payload.get("key"))
    if key is None:
        raise ValueError("Jira issue payload is missing a key")
    fields = payload.get("fields")
    if not isinstance(fields, dict):
        fields = {}

    description = fields.get("description")
    description_text = (
        adf_to_text(description).strip() if isinstance(description, dict) else _text(description)
    )
    return JiraIssue(
        key=key,
        issue_id=_text(payload.get("id")),
        summary=_text(fields.get("summary")) or "(no summary)",
        description=description_text or None,
        status_name=_nested_text(fields, "status", "name"),
        status_category_key=_nested_text(fields, "status", "statusCategory", "key"),
        status_category_name=_nested_text(fields, "status", "statusCategory", "name"),
        priority=normalize_priority(_nested_text(fields, "priority", "name")),
        issue_type=_nested_text(fields, "issuetype", "name"),
        project_key=_nested_text(fields, "project", "key"),
        project_name=_nested_text(fields, "project", "name"),
        assignee_name=_nested_text(fields, "assignee", "displayName"),
        due_date=_parse_jira_date(fields.get("duedate")),
        created_at=_parse_jira_datetime(fields.get("created")),
        updated_at=_parse_jira_datetime(fields.get("updated")),
    )


def build_assigned_jql(*, exclude_done: bool = True, status: str | None = None) -> str:
    clauses = ["assignee = currentUser()"]
    if status:
        escaped = status.replace("\\", "\\\\").replace('"', '\\"')
        clauses.append(f'status = "{escaped}"')
    if exclude_done:
        clauses.append("statusCategory != Done")
    return " AND ".join(clauses) + " ORDER BY updated DESC"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class JiraClient(BearerApiClient):
    """Issue operations for one connected Jira Cloud site."""

    def __init__(self, http_client: httpx.AsyncClient, token: AccessToken) -> None:
        if not isinstance(token.metadata, JiraMeta):
            raise ValueError("JiraClient requires a Jira access token")
        super().__init__(http_client, token)
        self._meta = token.metadata
        self.base_url = JIRA_API_BASE_URL.format(cloud_id=quote(self._meta.cloud_id, safe=""))

    @property
    def site(self) -> JiraMeta:
        return self._meta

    def browse_url(self, issue_key: str) -> str:
        return f"{self._meta.site_url}/browse/{issue_key}"

    async def search_assigned_issues(
        self,
        *,
        exclude_done: bool = True,
        status: str | None = None,
        max_results: int = 50,
    ) -> list[JiraIssue]:
        payload = await self._request_json(
            "GET",
            "/search/jql",
            resource="assigned issues",
            params={
                "jql": build_assigned_jql(exclude_done=exclude_done, status=status),
                "maxResults": max_results,
                "fields": ",".join(ISSUE_FIELDS),
            },
        )
        raw_issues = payload.get("issues") if isinstance(payload, dict) else None
        if not isinstance(raw_issues, list):
            raise TransientFailureError("Jira search response missing issues array")

        issues: list[JiraIssue] = []
        for item in raw_issues:
            if not isinstance(item, dict):
                continue
            try:
                issues.append(parse_jira_issue(item))
            except ValueError:
                logger.warning("Skipping malformed Jira issue payload from %s", self._meta.site_url)
        return issues

    async def get_issue(self, issue_key: str) -> JiraIssue | None:
        """Fetch one issue; ``None`` when it no longer exists."""
        response = await self._request(
            "GET",
            f"/issue/{quote(issue_key, safe='')}",
            params={"fields": ",".join(ISSUE_FIELDS)},
        )
        if response.status_code == 404:
            return None
        raise_for_remote_status(response, token=self._token, resource=f"issue {issue_key}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientFailureError(f"Jira returned invalid JSON for {issue_key}") from exc
        if not isinstance(payload, dict):
            raise TransientFailureError(f"Jira returned an unexpected payload for {issue_key}")
        try:
            return parse_jira_issue(payload)
        except ValueError as exc:
            raise TransientFailureError(f"Jira returned a malformed issue: {exc}") from exc

    async def list_transitions(self, issue_key: str) -> list[IssueTransition]:
        payload = await self._request_json(
            "GET",
            f"/issue/{quote(issue_key, safe='')}/transitions",
            resource=f"transitions of {issue_key}",
        )
        raw = payload.get("transitions") if isinstance(payload, dict) else None
        if not isinstance(raw, list):
            return []
        transitions: list[IssueTransition] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            transition_id = _text(item.get("id"))
            if transition_id is None:
                continue
            transitions.append(
                IssueTransition(
                    transition_id=transition_id,
                    name=_text(item.get("name")) or transition_id,
                    to_status=_nested_text(item, "to", "name"),
                    to_category_key=_nested_text(item, "to", "statusCategory", "key"),
                )
            )
        return transitions

    async def apply_transition(self, issue_key: str, transition_id: str) -> None:
        await self._request_json(
            "POST",
            f"/issue/{quote(issue_key, safe='')}/transitions",
            resource=f"transition {transition_id} of {issue_key}",
            json_body={"transition": {"id": transition_id}},
        )
        logger.info("Applied transition %s to %s", transition_id, issue_key)

    async def list_projects(self, *, max_results: int = 50) -> list[JiraProject]:
        """Projects in which the user may create issues."""
        payload = await self._request_json(
            "GET",
            "/project/search",
            resource="projects",
            params={"action": "create", "maxResults": max_results, "expand": "description,lead"},
        )
        raw = payload.get("values") if isinstance(payload, dict) else None
        if not isinstance(raw, list):
            raise TransientFailureError("Jira project search response missing values array")
        projects: list[JiraProject] = []
        for item in raw:
            if not isinstance(item, dict) or _text(item.get("key")) is None:
                continue
            projects.append(
                JiraProject(
                    project_id=_text(item.get("id")) or "",
                    key=_text(item.get("key")) or "",
                    name=_text(item.get("name")) or item["key"],
                    description=_text(item.get("description")),
                    project_type=_text(item.get("projectTypeKey")),
                    lead_name=_nested_text(item, "lead", "displayName"),
                )
            )
        return projects

    async def project_metadata(self, project_key: str) -> ProjectMetadata:
        createmeta = await self._request_json(
            "GET",
            "/issue/createmeta",
            resource=f"create metadata of {project_key}",
            params={"projectKeys": project_key, "expand": "projects.issuetypes.fields"},
        )
        raw_projects = createmeta.get("projects") if isinstance(createmeta, dict) else None
        project = raw_projects[0] if isinstance(raw_projects, list) and raw_projects else None
        if not isinstance(project, dict):
            raise RemoteNotFoundError(
                f"No create metadata for project {project_key}", provider="jira"
            )
        listed = project.get("issuetypes")
        raw_types = [t for t in listed if isinstance(t, dict)] if isinstance(listed, list) else []

        issue_types = [
            IssueTypeInfo(
                type_id=_text(t.get("id")) or "",
                name=_text(t.get("name")) or "",
                description=_text(t.get("description")),
                subtask=bool(t.get("subtask")),
            )
            for t in raw_types
        ]
        # Priorities are read from the first issue type only.
        first_fields = raw_types[0].get("fields") if raw_types else None
        priority_field = first_fields.get("priority") if isinstance(first_fields, dict) else None
        allowed = (
            priority_field.get("allowedValues") if isinstance(priority_field, dict) else None
        )
        priorities = [
            PriorityOption(priority_id=_text(p.get("id")) or "", name=_text(p.get("name")) or "")
            for p in (allowed if isinstance(allowed, list) else [])
            if isinstance(p, dict)
        ]

        users = await self._request_json(
            "GET",
            "/user/assignable/search",
            resource=f"assignable users of {project_key}",
            params={"project": project_key, "maxResults": 50},
        )
        assignable = [
            AssignableUser(
                account_id=_text(u.get("accountId")) or "",
                display_name=_text(u.get("displayName")),
                email=_text(u.get("emailAddress")),
            )
            for u in (users if isinstance(users, list) else [])
            if isinstance(u, dict) and u.get("active", True) and _text(u.get("accountId"))
        ]
        return ProjectMetadata(
            project_id=_text(project.get("id")) or "",
            key=_text(project.get("key")) or project_key,
            name=_text(project.get("name")) or project_key,
            issue_types=issue_types,
            priorities=priorities,
            assignable_users=assignable,
        )

    async def project_workflows(self, project_key: str) -> list[IssueTypeStatuses]:
        payload = await self._request_json(
            "GET",
            f"/project/{quote(project_key, safe='')}/statuses",
            resource=f"statuses of {project_key}",
        )
        workflows: list[IssueTypeStatuses] = []
        for item in payload if isinstance(payload, list) else []:
            if not isinstance(item, dict):
                continue
            statuses = item.get("statuses")
            workflows.append(
                IssueTypeStatuses(
                    issue_type=_text(item.get("name")) or "",
                    statuses=[
                        name
                        for s in (statuses if isinstance(statuses, list) else [])
                        if (name := _nested_text(s, "name")) is not None
                    ],
                )
            )
        return workflows

    async def create_issue(self, draft: IssueDraft) -> CreatedIssue:
        payload = await self._request_json(
            "POST",
            "/issue",
            resource=f"new issue in {draft.project_key}",
            json_body={"fields": draft.to_fields()},
        )
        key = _text(payload.get("key")) if isinstance(payload, dict) else None
        if key is None:
            raise TransientFailureError("Jira create-issue response missing the issue key")
        logger.info("Created Jira issue %s on %s", key, self._meta.site_url)
        return CreatedIssue(
            key=key,
            issue_id=_text(payload.get("id")),
            browse_url=self.browse_url(key),
            draft=draft,
        )


async def _get_atlassian_json(
    http_client: httpx.AsyncClient, url: str, access_token: str
) -> Any:
    try:
        response = await http_client.get(
            url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        raise TransientFailureError(f"Atlassian request failed: {type(exc).__name__}") from exc
    if response.status_code == 401:
        raise AuthenticationRequiredError(
            "Atlassian rejected the new access token", provider="jira", reason="token_rejected"
        )
    if response.status_code < 200 or response.status_code >= 300:
        raise TransientFailureError(
            f"Atlassian request failed ({response.status_code}): {safe_error_message(response)}",
            status_code=response.status_code,
        )
    try:
        return response.json()
    except ValueError as exc:
        raise TransientFailureError("Atlassian returned invalid JSON") from exc


async def fetch_jira_profiles(
    http_client: httpx.AsyncClient, access_token: str
) -> list[AccountProfile]:
    """One account profile per Jira site the new token can reach."""
    me = await _get_atlassian_json(http_client, ATLASSIAN_ME_URL, access_token)
    resources = await _get_atlassian_json(
        http_client, ATLASSIAN_ACCESSIBLE_RESOURCES_URL, access_token
    )
    email = _text(me.get("email")) if isinstance(me, dict) else None
    if not isinstance(resources, list):
        raise TransientFailureError("Atlassian accessible-resources response is not a list")

    profiles: list[AccountProfile] = []
    for resource in resources:
        if not isinstance(resource, dict):
            continue
        cloud_id = _text(resource.get("id"))
        site_url = _text(resource.get("url"))
        if cloud_id is None or site_url is None:
            continue
        site_name = _text(resource.get("name"))
        scopes = resource.get("scopes")
        profiles.append(
            AccountProfile(
                account_id=cloud_id,
                account_name=site_name or site_url,
                account_email=email,
                metadata=JiraMeta(
                    cloud_id=cloud_id,
                    site_url=site_url,
                    site_name=site_name,
                    scopes=[s for s in scopes if isinstance(s, str)]
                    if isinstance(scopes, list)
                    else [],
                ),
            )
        )
    if not profiles:
        raise AuthenticationRequiredError(
            "The Jira authorization grants access to no sites",
            provider="jira",
            reason="no_accessible_resources",
        )
    return profiles
