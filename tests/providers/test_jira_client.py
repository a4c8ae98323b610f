"""Tests for cally.providers.jira parsing and JiraClient."""

from __future__ import annotations

import json
import uuid

import httpx
import pytest

from cally.credentials.models import AccessToken, GoogleMeta, JiraMeta, Provider
from cally.errors import (
    AuthenticationRequiredError,
    InvalidInputError,
    PermissionDeniedError,
    RemoteNotFoundError,
)
from cally.events.models import EventStatus
from cally.providers.jira import (
    JiraClient,
    adf_to_text,
    build_assigned_jql,
    fetch_jira_profiles,
    parse_issue_draft,
    parse_jira_issue,
)

pytestmark = pytest.mark.unit


def _token() -> AccessToken:
    return AccessToken(
        access_token="jira-access",
        credential_id=uuid.uuid4(),
        provider=Provider.JIRA,
        account_id="cloud-1",
        metadata=JiraMeta(cloud_id="cloud-1", site_url="https://acme.atlassian.net"),
    )


def _issue_payload(key: str = "PROJ-1", category: str = "indeterminate") -> dict:
    return {
        "id": "10001",
        "key": key,
        "fields": {
            "summary": "Fix the thing",
            "status": {"name": "In Progress", "statusCategory": {"key": category, "name": "x"}},
            "priority": {"name": "High"},
            "issuetype": {"name": "Bug"},
            "project": {"key": "PROJ", "name": "Project"},
            "duedate": "2026-03-10",
            "updated": "2026-03-01T12:00:00.000+0000",
            "description": {
                "type": "doc",
                "content": [
                    {"type": "paragraph", "content": [{"type": "text", "text": "Line one"}]},
                    {"type": "paragraph", "content": [{"type": "text", "text": "Line two"}]},
                ],
            },
        },
    }


class TestParsing:
    def test_parse_issue(self):
        issue = parse_jira_issue(_issue_payload())
        assert issue.key == "PROJ-1"
        assert issue.priority == "high"
        assert issue.event_status is EventStatus.IN_PROGRESS
        assert not issue.is_done
        assert issue.display_title == "PROJ-1: Fix the thing"
        assert issue.description == "Line one\nLine two"
        assert issue.due_date.isoformat() == "2026-03-10"
        assert issue.updated_at is not None and issue.updated_at.utcoffset().total_seconds() == 0

    def test_done_category(self):
        issue = parse_jira_issue(_issue_payload(category="done"))
        assert issue.is_done
        assert issue.event_status is EventStatus.DONE

    def test_unknown_priority_defaults_to_medium(self):
        payload = _issue_payload()
        payload["fields"]["priority"] = {"name": "Blocker-ish"}
        assert parse_jira_issue(payload).priority == "medium"

    def test_missing_key_raises(self):
        with pytest.raises(ValueError):
            parse_jira_issue({"fields": {}})

    def test_adf_hard_break(self):
        node = {
            "type": "paragraph",
            "content": [{"type": "text", "text": "a"}, {"type": "hardBreak"}],
        }
        assert adf_to_text(node) == "a\n\n"


class TestAssignedJql:
    def test_default_excludes_done(self):
        assert build_assigned_jql() == (
            "assignee = currentUser() AND statusCategory != Done ORDER BY updated DESC"
        )

    def test_status_filter_is_quoted(self):
        jql = build_assigned_jql(exclude_done=False, status='To "Do"')
        assert jql == 'assignee = currentUser() AND status = "To \\"Do\\"" ORDER BY updated DESC'


class TestJiraClient:
    async def test_requires_jira_token(self):
        google_token = AccessToken(
            access_token="x",
            credential_id=uuid.uuid4(),
            provider=Provider.GOOGLE,
            account_id="g",
            metadata=GoogleMeta(),
        )
        async with httpx.AsyncClient() as http_client:
            with pytest.raises(ValueError):
                JiraClient(http_client, google_token)

    async def test_search_uses_cloud_gateway(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"issues": [_issue_payload(), {"fields": {}}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = JiraClient(http_client, _token())
            issues = await client.search_assigned_issues(max_results=25)

        assert [issue.key for issue in issues] == ["PROJ-1"]
        request = requests[0]
        assert request.url.host == "api.atlassian.com"
        assert request.url.path == "/ex/jira/cloud-1/rest/api/3/search/jql"
        assert request.url.params["maxResults"] == "25"
        assert "statusCategory != Done" in request.url.params["jql"]
        assert client.browse_url("PROJ-1") == "https://acme.atlassian.net/browse/PROJ-1"

    async def test_get_issue_404_is_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"errorMessages": ["Issue does not exist"]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            assert await JiraClient(http_client, _token()).get_issue("PROJ-404") is None

    async def test_get_issue_403_is_permission_denied(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"errorMessages": ["No browse permission"]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            with pytest.raises(PermissionDeniedError, match="No browse permission"):
                await JiraClient(http_client, _token()).get_issue("PROJ-1")

    async def test_transitions_roundtrip(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={
                        "transitions": [
                            {
                                "id": "31",
                                "name": "Done",
                                "to": {"name": "Done", "statusCategory": {"key": "done"}},
                            },
                            {"name": "no id"},
                        ]
                    },
                )
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = JiraClient(http_client, _token())
            transitions = await client.list_transitions("PROJ-1")
            await client.apply_transition("PROJ-1", "31")

        assert [(t.transition_id, t.to_category_key) for t in transitions] == [("31", "done")]
        assert json.loads(requests[1].content) == {"transition": {"id": "31"}}


class TestIssueDraft:
    def test_fields_are_trimmed_and_optional_parts_omitted(self):
        draft = parse_issue_draft(
            {
                "project_key": " PROJ ",
                "summary": " Fix login ",
                "issue_type": "Bug",
                "priority": " ",
            }
        )

        assert draft.to_fields() == {
            "project": {"key": "PROJ"},
            "summary": "Fix login",
            "issuetype": {"name": "Bug"},
        }

    def test_description_becomes_adf(self):
        draft = parse_issue_draft(
            {"project_key": "PROJ", "summary": "s", "issue_type": "Task", "description": "Body"}
        )

        description = draft.to_fields()["description"]
        assert description["type"] == "doc"
        assert adf_to_text(description).strip() == "Body"

    @pytest.mark.parametrize(
        ("assignee", "expected"),
        [
            ("dev@acme.com", {"emailAddress": "dev@acme.com"}),
            ("557058:abc", {"accountId": "557058:abc"}),
        ],
    )
    def test_assignee_by_email_or_account_id(self, assignee, expected):
        draft = parse_issue_draft(
            {"project_key": "P", "summary": "s", "issue_type": "Task", "assignee": assignee}
        )
        assert draft.to_fields()["assignee"] == expected

    @pytest.mark.parametrize("missing", ["project_key", "summary", "issue_type"])
    def test_blank_required_field_is_invalid(self, missing):
        data = {"project_key": "PROJ", "summary": "s", "issue_type": "Task", missing: "   "}
        with pytest.raises(InvalidInputError) as excinfo:
            parse_issue_draft(data)
        assert missing in excinfo.value.context["fields"]


class TestProjects:
    async def test_list_projects_requests_creatable_projects(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "values": [
                        {
                            "id": "100",
                            "key": "PROJ",
                            "name": "Project",
                            "projectTypeKey": "software",
                            "lead": {"displayName": "Lee"},
                        },
                        {"id": "101"},
                    ]
                },
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            projects = await JiraClient(http_client, _token()).list_projects()

        assert [(p.key, p.project_type, p.lead_name) for p in projects] == [
            ("PROJ", "software", "Lee")
        ]
        assert requests[0].url.path == "/ex/jira/cloud-1/rest/api/3/project/search"
        assert requests[0].url.params["action"] == "create"

    async def test_project_metadata(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/issue/createmeta"):
                assert request.url.params["projectKeys"] == "PROJ"
                return httpx.Response(
                    200,
                    json={
                        "projects": [
                            {
                                "id": "100",
                                "key": "PROJ",
                                "name": "Project",
                                "issuetypes": [
                                    {
                                        "id": "1",
                                        "name": "Bug",
                                        "fields": {
                                            "priority": {
                                                "allowedValues": [
                                                    {"id": "2", "name": "High"},
                                                    {"id": "3", "name": "Low"},
                                                ]
                                            }
                                        },
                                    },
                                    {"id": "5", "name": "Sub-task", "subtask": True},
                                ],
                            }
                        ]
                    },
                )
            return httpx.Response(
                200,
                json=[
                    {"accountId": "a-1", "displayName": "Ann", "active": True},
                    {"accountId": "a-2", "displayName": "Gone", "active": False},
                ],
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            metadata = await JiraClient(http_client, _token()).project_metadata("PROJ")

        assert [(t.name, t.subtask) for t in metadata.issue_types] == [
            ("Bug", False),
            ("Sub-task", True),
        ]
        assert [p.name for p in metadata.priorities] == ["High", "Low"]
        assert [u.account_id for u in metadata.assignable_users] == ["a-1"]

    async def test_project_metadata_unknown_project(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"projects": []})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            with pytest.raises(RemoteNotFoundError):
                await JiraClient(http_client, _token()).project_metadata("NOPE")

    async def test_project_workflows(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/project/PROJ/statuses")
            return httpx.Response(
                200,
                json=[
                    {"name": "Bug", "statuses": [{"name": "To Do"}, {"name": "Done"}]},
                    {"name": "Task", "statuses": []},
                ],
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            workflows = await JiraClient(http_client, _token()).project_workflows("PROJ")

        assert [(w.issue_type, w.statuses) for w in workflows] == [
            ("Bug", ["To Do", "Done"]),
            ("Task", []),
        ]

    async def test_create_issue_posts_fields(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "10042", "key": "PROJ-42"})

        draft = parse_issue_draft({"project_key": "PROJ", "summary": "New", "issue_type": "Task"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            created = await JiraClient(http_client, _token()).create_issue(draft)

        assert created.key == "PROJ-42"
        assert created.browse_url == "https://acme.atlassian.net/browse/PROJ-42"
        assert bodies == [{"fields": draft.to_fields()}]


class TestFetchJiraProfiles:
    async def test_one_profile_per_site(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/me":
                return httpx.Response(200, json={"email": "me@acme.com"})
            return httpx.Response(
                200,
                json=[
                    {"id": "cloud-1", "url": "https://acme.atlassian.net", "name": "Acme"},
                    {"id": "cloud-2", "url": "https://side.atlassian.net", "scopes": ["read"]},
                ],
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            profiles = await fetch_jira_profiles(http_client, "tok")

        assert [p.account_id for p in profiles] == ["cloud-1", "cloud-2"]
        assert profiles[0].account_name == "Acme"
        assert profiles[1].metadata.scopes == ["read"]
        assert profiles[0].account_email == "me@acme.com"

    async def test_no_sites_requires_reconnect(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/me":
                return httpx.Response(200, json={})
            return httpx.Response(200, json=[])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            with pytest.raises(AuthenticationRequiredError):
                await fetch_jira_profiles(http_client, "tok")
