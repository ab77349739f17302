from __future__ import annotations

import re
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Union
from urllib.parse import quote

from shared.field_cache import FieldCache
from shared.http_client import HttpClient, UpstreamError
from shared.logging import get_logger
from shared.result import Result, capture

API = "/rest/api/2"
AGILE = "/rest/agile/1.0"
MAX_RESULTS_CAP = 100

DEFAULT_READ_JIRA_FIELDS = (
    "summary",
    "description",
    "issuetype",
    "project",
    "status",
    "assignee",
    "reporter",
    "created",
    "updated",
    "priority",
    "labels",
    "components",
    "fixVersions",
    "comment",
)

logger = get_logger(__name__, platform="jira")

_JIRA_MARKUP_RULES = (
    (re.compile(r"^### (.*)$", re.MULTILINE), r"h3. \1"),
    (re.compile(r"^## (.*)$", re.MULTILINE), r"h2. \1"),
    (re.compile(r"^# (.*)$", re.MULTILINE), r"h1. \1"),
    # Italic before bold so the bold output is not rewritten again.
    (re.compile(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)"), r"_\1_"),
    (re.compile(r"\*\*(.+?)\*\*"), r"*\1*"),
    (re.compile(r"`(.*?)`"), r"{{\1}}"),
    (re.compile(r"\[(.*?)\]\((.*?)\)"), r"[\1|\2]"),
)


def markdown_to_jira(markdown: str) -> str:
    """Translate the common Markdown constructs into Jira wiki markup."""
    if not markdown:
        return ""
    text = markdown
    for pattern, replacement in _JIRA_MARKUP_RULES:
        text = pattern.sub(replacement, text)
    return text


def _join_fields(fields: Union[str, list[str], tuple[str, ...], None]) -> str:
    if fields is None:
        return ",".join(DEFAULT_READ_JIRA_FIELDS)
    if isinstance(fields, str):
        return fields
    return ",".join(fields)


def apply_projects_filter(jql: str, projects_filter: Optional[str]) -> str:
    """Scope ``jql`` to a comma-separated list of project keys.

    The filter is prepended to a bare ``ORDER BY`` clause, AND-combined with
    any other query, and skipped when the query already names a project.
    """
    if not projects_filter:
        return jql

    projects = [p.strip() for p in projects_filter.split(",") if p.strip()]
    if not projects:
        return jql
    if len(projects) == 1:
        project_query = f'project = "{projects[0]}"'
    else:
        project_query = "project IN (" + ", ".join(f'"{p}"' for p in projects) + ")"

    if not jql:
        return project_query
    if jql.strip().upper().startswith("ORDER BY"):
        return f"{project_query} {jql}"
    if "project = " in jql or "project IN" in jql:
        return jql
    return f"({jql}) AND {project_query}"


def _issue_summary(issue: dict[str, Any]) -> dict[str, Any]:
    fields = issue.get("fields") or {}
    return {"key": issue.get("key"), "title": fields.get("summary"), "fields": fields}


def _search_page(response: dict[str, Any]) -> dict[str, Any]:
    return {
        "startAt": response.get("startAt"),
        "maxResults": response.get("maxResults"),
        "total": response.get("total"),
        "issues": [_issue_summary(i) for i in response.get("issues") or []],
    }


def _person(info: Optional[dict[str, Any]]) -> dict[str, str]:
    info = info or {}
    return {"displayName": info.get("displayName") or "", "emailAddress": info.get("emailAddress") or ""}


def _comment(comment: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": comment.get("id"),
        "body": (comment.get("body") or "").strip(),
        "created": comment.get("created"),
        "updated": comment.get("updated") or comment.get("created"),
        "author": (comment.get("author") or {}).get("displayName") or "Unknown",
    }


@contextmanager
def _failure(message: str) -> Iterator[None]:
    try:
        yield
    except UpstreamError as exc:
        raise RuntimeError(f"{message}: {exc}") from exc


class JiraClient:
    """Jira Server / Data Center REST client (API v2 plus Agile 1.0)."""

    def __init__(self, http: HttpClient) -> None:
        self._http = http
        self._fields = FieldCache(self._load_fields)

    @staticmethod
    def _key(value: Any) -> str:
        return quote(str(value), safe="")

    # -- issues ------------------------------------------------------------------

    def get_issue(
        self,
        issue_key: str,
        fields: Union[str, list[str], None] = None,
        expand: Optional[str] = None,
        comment_limit: int = 10,
        update_history: bool = True,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"fields": _join_fields(fields), "updateHistory": str(update_history).lower()}
        if expand:
            params["expand"] = expand

        with _failure(f"Error retrieving issue {issue_key}"):
            response = self._http.get(f"{API}/issue/{self._key(issue_key)}", params=params)

        response_fields = dict(response.get("fields") or {})
        comment_block = response_fields.get("comment")
        if isinstance(comment_block, dict) and isinstance(comment_block.get("comments"), list):
            comments = comment_block["comments"]
            response_fields["comment"] = {**comment_block, "comments": comments[-comment_limit:] if comment_limit > 0 else []}

        project = response_fields.get("project") or {}
        timetracking = response_fields.get("timetracking") or {}
        return {
            "key": response.get("key"),
            "summary": response_fields.get("summary"),
            "description": response_fields.get("description"),
            "issuetype": (response_fields.get("issuetype") or {}).get("name"),
            "project": {"key": project.get("key"), "name": project.get("name")},
            "status": (response_fields.get("status") or {}).get("name"),
            "assignee": _person(response_fields.get("assignee")),
            "reporter": _person(response_fields.get("reporter")),
            "timetracking": {
                "remainingEstimate": timetracking.get("remainingEstimate"),
                "timeSpent": timetracking.get("timeSpent"),
                "remainingEstimateSeconds": timetracking.get("remainingEstimateSeconds"),
                "timeSpentSeconds": timetracking.get("timeSpentSeconds"),
            },
            "fields": response_fields,
        }

    def create_issue(self, fields: dict[str, Any]) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            response = self._http.post(f"{API}/issue", {"fields": fields})
            return {"id": response.get("id"), "key": response.get("key")}

        return capture(_do)

    def update_issue(self, issue_key: str, fields: dict[str, Any]) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            self._http.put(f"{API}/issue/{self._key(issue_key)}", {"fields": fields})
            return {"success": True}

        return capture(_do)

    def delete_issue(self, issue_key: str) -> bool:
        with _failure(f"Error deleting issue {issue_key}"):
            self._http.delete(f"{API}/issue/{self._key(issue_key)}")
        return True

    def batch_create_issues(self, issues: list[dict[str, Any]], validate_only: bool = False) -> list[dict[str, Any]]:
        if not issues:
            return []

        issue_updates = [{"fields": fields} for fields in issues]
        if validate_only:
            return [{"id": "validated", "key": "validated"} for _ in issue_updates]

        with _failure("Error in bulk issue creation"):
            response = self._http.post(f"{API}/issue/bulk", {"issueUpdates": issue_updates})

        if response.get("errors"):
            logger.warning("Bulk creation reported errors", extra={"extra": {"errors": response["errors"]}})
        return [
            {"id": info.get("id"), "key": info["key"]}
            for info in response.get("issues") or []
            if info.get("key")
        ]

    def get_issue_changelog(self, issue_key: str, start_at: int = 0, max_results: int = 100) -> dict[str, Any]:
        with _failure("Failed to get issue changelog"):
            response = self._http.get(
                f"{API}/issue/{self._key(issue_key)}",
                params={"expand": "changelog", "startAt": start_at, "maxResults": max_results},
            )

        changelog = response.get("changelog") or {}
        return {
            "issueKey": issue_key,
            "total": changelog.get("total") or 0,
            "startAt": changelog.get("startAt") or 0,
            "maxResults": changelog.get("maxResults") or 0,
            "histories": [
                {
                    "id": history.get("id"),
                    "author": {
                        "name": (history.get("author") or {}).get("name") or (history.get("author") or {}).get("username"),
                        "displayName": (history.get("author") or {}).get("displayName"),
                    },
                    "created": history.get("created"),
                    "items": history.get("items") or [],
                }
                for history in changelog.get("histories") or []
            ],
        }

    # -- search ------------------------------------------------------------------

    def search_issues(
        self,
        jql: str,
        projects_filter: Optional[str] = None,
        start: int = 0,
        limit: int = 50,
        fields: Union[str, list[str], None] = None,
        expand: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "jql": apply_projects_filter(jql, projects_filter),
            "startAt": start,
            "maxResults": min(limit, MAX_RESULTS_CAP),
            "fields": _join_fields(fields),
        }
        if expand:
            params["expand"] = expand

        with _failure(f"Error searching issues with JQL '{jql}'"):
            response = self._http.get(f"{API}/search", params=params)
        return _search_page(response)

    def get_board_issues(
        self,
        board_id: str,
        jql: str = "",
        start: int = 0,
        limit: int = 50,
        fields: Union[str, list[str], None] = None,
        expand: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "jql": jql,
            "startAt": start,
            "maxResults": min(limit, MAX_RESULTS_CAP),
            "fields": _join_fields(fields),
        }
        if expand:
            params["expand"] = expand

        with _failure("Error getting board issues"):
            response = self._http.get(f"{AGILE}/board/{self._key(board_id)}/issue", params=params)
        return _search_page(response)

    def get_sprint_issues(self, sprint_id: str, start: int = 0, limit: int = 50) -> dict[str, Any]:
        with _failure("Error getting sprint issues"):
            response = self._http.get(
                f"{AGILE}/sprint/{self._key(sprint_id)}/issue",
                params={"startAt": start, "maxResults": min(limit, MAX_RESULTS_CAP)},
            )
        return _search_page(response)

    # -- comments ----------------------------------------------------------------

    def get_issue_comments(self, issue_key: str, limit: int = 50) -> list[dict[str, Any]]:
        with _failure(f"Error getting comments for issue {issue_key}"):
            response = self._http.get(
                f"{API}/issue/{self._key(issue_key)}/comment",
                params={"maxResults": min(limit, MAX_RESULTS_CAP)},
            )
        return [_comment(c) for c in (response.get("comments") or [])[:limit]]

    def add_comment(self, issue_key: str, comment: str) -> dict[str, Any]:
        with _failure(f"Error adding comment to issue {issue_key}"):
            response = self._http.post(
                f"{API}/issue/{self._key(issue_key)}/comment",
                {"body": markdown_to_jira(comment)},
            )
        return _comment(response)

    # -- projects ----------------------------------------------------------------

    def get_all_projects(self, include_archived: bool = False) -> list[dict[str, Any]]:
        params = {} if include_archived else {"status": "live"}
        with _failure("Error getting all projects"):
            response = self._http.get(f"{API}/project", params=params)
        return response if isinstance(response, list) else []

    def get_project(self, project_key: str) -> Optional[dict[str, Any]]:
        try:
            return self._http.get(f"{API}/project/{self._key(project_key)}")
        except UpstreamError as exc:
            if exc.status_code == 404:
                return None
            raise RuntimeError(f"Error getting project {project_key}: {exc}") from exc

    def project_exists(self, project_key: str) -> bool:
        try:
            return self.get_project(project_key) is not None
        except RuntimeError as exc:
            logger.info("Project lookup failed, treating as missing", extra={"extra": {"error": str(exc)}})
            return False

    def get_project_roles(self, project_key: str) -> dict[str, Any]:
        # The role endpoint needs admin rights; the project body lists roles for everyone.
        project = self.get_project(project_key)
        return (project or {}).get("roles") or {}

    def get_my_project_permissions(self, project_key: str) -> dict[str, Any]:
        with _failure(f"Error getting my permissions for project {project_key}"):
            return self._http.get(f"{API}/mypermissions", params={"projectKey": project_key})

    def get_project_issue_types(self, project_key: str) -> list[dict[str, Any]]:
        project = self.get_project(project_key)
        return (project or {}).get("issueTypes") or []

    def get_project_issues_count(self, project_key: str) -> int:
        with _failure(f"Error getting issues count for project {project_key}"):
            response = self._http.get(
                f"{API}/search", params={"jql": f'project = "{project_key}"', "maxResults": 0}
            )
        return response.get("total") or 0

    def get_project_issues(self, project_key: str, start: int = 0, limit: int = 50) -> dict[str, Any]:
        return self.search_issues(f'project = "{project_key}"', start=start, limit=limit)

    def get_project_statuses(self, project_key: str) -> list[dict[str, Any]]:
        with _failure(f"Error getting statuses for project {project_key}"):
            response = self._http.get(f"{API}/project/{self._key(project_key)}/statuses")
        return response or []

    def get_priorities(self) -> list[dict[str, Any]]:
        with _failure("Error getting priorities"):
            return self._http.get(f"{API}/priority") or []

    def get_resolutions(self) -> list[dict[str, Any]]:
        with _failure("Error getting resolutions"):
            return self._http.get(f"{API}/resolution") or []

    def get_project_components(self, project_key: str) -> list[dict[str, Any]]:
        with _failure(f"Error getting components for project {project_key}"):
            response = self._http.get(f"{API}/project/{self._key(project_key)}/components")
        return response if isinstance(response, list) else []

    def get_project_versions(self, project_key: str) -> list[dict[str, Any]]:
        with _failure(f"Error getting versions for project {project_key}"):
            response = self._http.get(f"{API}/project/{self._key(project_key)}/versions")
        return response if isinstance(response, list) else []

    def create_project_version(
        self,
        project_key: str,
        name: str,
        start_date: Optional[str] = None,
        release_date: Optional[str] = None,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"name": name, "project": project_key}
        if start_date:
            data["startDate"] = start_date
        if release_date:
            data["releaseDate"] = release_date
        if description:
            data["description"] = description

        with _failure(f"Error creating version for project {project_key}"):
            return self._http.post(f"{API}/version", data)

    # -- agile -------------------------------------------------------------------

    def get_agile_boards(
        self,
        board_name: Optional[str] = None,
        project_key: Optional[str] = None,
        board_type: Optional[str] = None,
        start: int = 0,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"startAt": start, "maxResults": min(limit, MAX_RESULTS_CAP)}
        if board_name:
            params["name"] = board_name
        if project_key:
            params["projectKeyOrId"] = project_key
        if board_type:
            params["type"] = board_type

        with _failure("Error getting agile boards"):
            response = self._http.get(f"{AGILE}/board", params=params)
        return response.get("values") or []

    def get_board_sprints(
        self, board_id: str, state: Optional[str] = None, start: int = 0, limit: int = 50
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"startAt": start, "maxResults": min(limit, MAX_RESULTS_CAP)}
        if state:
            params["state"] = state

        with _failure(f"Error getting sprints for board {board_id}"):
            response = self._http.get(f"{AGILE}/board/{self._key(board_id)}/sprint", params=params)
        return response.get("values") or []

    def create_sprint(
        self,
        board_id: str,
        name: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        goal: Optional[str] = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": name,
            "startDate": start_date,
            "endDate": end_date,
            "originBoardId": int(board_id),
        }
        if goal:
            data["goal"] = goal

        with _failure(f"Error creating sprint on board {board_id}"):
            return self._http.post(f"{AGILE}/sprint", data)

    def update_sprint(
        self,
        sprint_id: str,
        name: Optional[str] = None,
        state: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        goal: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        data: dict[str, Any] = {}
        if name:
            data["name"] = name
        if state:
            data["state"] = state
        if start_date:
            data["startDate"] = start_date
        if end_date:
            data["endDate"] = end_date
        if goal is not None:
            data["goal"] = goal

        with _failure(f"Error updating sprint {sprint_id}"):
            return self._http.put(f"{AGILE}/sprint/{self._key(sprint_id)}", data)

    def start_sprint(self, sprint_id: str) -> Optional[dict[str, Any]]:
        return self.update_sprint(sprint_id, state="active")

    def complete_sprint(self, sprint_id: str) -> Optional[dict[str, Any]]:
        return self.update_sprint(sprint_id, state="closed")

    def get_all_active_sprints(self, start: int = 0, limit: int = 50) -> list[dict[str, Any]]:
        """Active sprints of every scrum board. Kanban boards have no sprints."""
        sprints: list[dict[str, Any]] = []
        for board in self.get_agile_boards():
            if board.get("id") is None or board.get("type") != "scrum":
                continue
            try:
                sprints.extend(self.get_board_sprints(str(board["id"]), "active", start, limit))
            except RuntimeError as exc:
                logger.info("Skipping board without sprint access", extra={"extra": {"board_id": board["id"], "error": str(exc)}})
        return sprints

    def get_sprint(self, sprint_id: str) -> dict[str, Any]:
        with _failure(f"Error getting sprint details for {sprint_id}"):
            return self._http.get(f"{AGILE}/sprint/{self._key(sprint_id)}")

    def link_issue_to_epic(self, issue_key: str, epic_key: str) -> dict[str, Any]:
        epic_link = self.get_epic_field_ids().get("epic_link")
        if not epic_link:
            raise RuntimeError(f"Error linking issue {issue_key} to epic {epic_key}: Epic Link field not found")

        result = self.update_issue(issue_key, {epic_link: epic_key})
        if not result.is_ok:
            raise RuntimeError(f"Error linking issue {issue_key} to epic {epic_key}: {result.message}")
        return self.get_issue(issue_key)

    def get_epic_issues(self, epic_key: str, start: int = 0, limit: int = 50) -> list[dict[str, Any]]:
        # JQL needs the field name here, not the custom field id.
        page = self.search_issues(f'"Epic Link" = "{epic_key}"', start=start, limit=limit)
        return [{"key": issue["key"], **issue["fields"]} for issue in page["issues"]]

    # -- worklogs and transitions ------------------------------------------------

    def add_worklog(
        self,
        issue_key: str,
        time_spent: str,
        comment: Optional[str] = None,
        started: Optional[str] = None,
        original_estimate: Optional[str] = None,
        remaining_estimate: Optional[str] = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"timeSpent": time_spent}
        if comment:
            data["comment"] = comment
        if started:
            data["started"] = started
        if original_estimate:
            data["originalEstimate"] = original_estimate
        if remaining_estimate:
            data["remainingEstimate"] = remaining_estimate

        with _failure(f"Error adding worklog to issue {issue_key}"):
            return self._http.post(f"{API}/issue/{self._key(issue_key)}/worklog", data)

    def get_worklogs(self, issue_key: str) -> list[dict[str, Any]]:
        with _failure(f"Error getting worklog for issue {issue_key}"):
            response = self._http.get(f"{API}/issue/{self._key(issue_key)}/worklog")
        return response.get("worklogs") or []

    def get_transitions(self, issue_key: str) -> list[dict[str, Any]]:
        with _failure(f"Error getting transitions for issue {issue_key}"):
            response = self._http.get(f"{API}/issue/{self._key(issue_key)}/transitions")
        return response.get("transitions") or []

    def transition_issue(
        self,
        issue_key: str,
        transition_id: Union[str, int],
        fields: Optional[dict[str, Any]] = None,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"transition": {"id": str(transition_id)}}
        if fields:
            data["fields"] = fields
        if comment:
            data["update"] = {"comment": [{"add": {"body": markdown_to_jira(comment)}}]}

        with _failure(f"Error transitioning issue {issue_key}"):
            self._http.post(f"{API}/issue/{self._key(issue_key)}/transitions", data)
        return self.get_issue(issue_key)

    # -- fields ------------------------------------------------------------------

    def _load_fields(self) -> list[dict[str, Any]]:
        with _failure("Error getting fields"):
            return self._http.get(f"{API}/field")

    def get_fields(self, refresh: bool = False) -> list[dict[str, Any]]:
        return self._fields.get(refresh=refresh)

    def get_field_id(self, field_name: str, refresh: bool = False) -> Optional[str]:
        wanted = field_name.lower()
        for field in self.get_fields(refresh):
            names = [str(field.get("name", "")).lower()] + [str(c).lower() for c in field.get("clauseNames") or []]
            if wanted in names:
                return field.get("id")
        return None

    def get_field_by_id(self, field_id: str, refresh: bool = False) -> Optional[dict[str, Any]]:
        return next((f for f in self.get_fields(refresh) if f.get("id") == field_id), None)

    def search_fields(self, keyword: str, limit: int = 10, refresh: bool = False) -> list[dict[str, Any]]:
        needle = keyword.lower()
        matches = [
            field
            for field in self.get_fields(refresh)
            if needle in str(field.get("name", "")).lower()
            or needle in str(field.get("id", "")).lower()
            or any(needle in str(c).lower() for c in field.get("clauseNames") or [])
        ]
        return matches[:limit]

    def get_custom_fields(self, refresh: bool = False) -> list[dict[str, Any]]:
        return [f for f in self.get_fields(refresh) if f.get("custom") is True]

    def get_epic_field_ids(self) -> dict[str, str]:
        def _find(label: str, known_id: str, schema_marker: str) -> Optional[str]:
            for field in self.get_fields():
                custom = (field.get("schema") or {}).get("custom") or ""
                if label in str(field.get("name", "")).lower() or field.get("id") == known_id or schema_marker in custom:
                    return field.get("id")
            return None

        result: dict[str, str] = {}
        epic_link = _find("epic link", "customfield_10014", "epic-link")
        if epic_link:
            result["epic_link"] = epic_link
        epic_name = _find("epic name", "customfield_10011", "epic-name")
        if epic_name:
            result["epic_name"] = epic_name
        return result

    def get_required_fields(self, issue_type: str, project_key: str) -> dict[str, Any]:
        """Required fields for creating ``issue_type`` in ``project_key``.

        Uses the per-issue-type createmeta endpoint; the global createmeta
        endpoint no longer exists on Jira 9.
        """
        with _failure("Error getting required fields"):
            project = self._http.get(f"{API}/project/{self._key(project_key)}")
            issue_types = project.get("issueTypes") or []
            match = next(
                (t for t in issue_types if str(t.get("name", "")).lower() == issue_type.lower()),
                None,
            )
            if match is None:
                return {}

            meta = self._http.get(
                f"{API}/issue/createmeta/{self._key(project_key)}/issuetypes/{self._key(match['id'])}"
            )

        return {
            field["fieldId"]: {
                "name": field.get("name"),
                "required": True,
                "schema": field.get("schema"),
                "fieldId": field["fieldId"],
            }
            for field in meta.get("values") or []
            if field.get("required")
        }

    def get_issue_picker_suggestions(
        self,
        query: str,
        current_issue_key: Optional[str] = None,
        current_project_id: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"query": query}
        if current_issue_key:
            params["currentIssueKey"] = current_issue_key
        if current_project_id:
            params["currentProjectId"] = current_project_id

        with _failure("Error getting issue picker suggestions"):
            return self._http.get(f"{API}/issue/picker", params=params)
