from __future__ import annotations

from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from mcp_server.common import clamp, jira_client, required_arg, run_tool, unwrap
from shared.jira_client import MAX_RESULTS_CAP

mcp = FastMCP("jira")


def _issue_key(issue_key: str) -> str:
    return required_arg("issue_key", issue_key).upper()


def _project_key(project_key: str) -> str:
    return required_arg("project_key", project_key).upper()


def _split_fields(fields: Optional[str]) -> Optional[str]:
    value = (fields or "").strip()
    return value or None


@mcp.tool()
def jira_get_issue(
    issue_key: str,
    fields: Optional[str] = None,
    expand: Optional[str] = None,
    comment_limit: int = 10,
) -> dict[str, Any]:
    """Fetch a Jira issue by key (example: PROJ-123). fields is a comma-separated list."""
    key = _issue_key(issue_key)
    limit = clamp(comment_limit, MAX_RESULTS_CAP, lower=0)
    return run_tool(
        "jira_get_issue",
        lambda: jira_client().get_issue(key, fields=_split_fields(fields), expand=expand, comment_limit=limit),
    )


@mcp.tool()
def jira_search_issues(
    jql: str,
    projects_filter: Optional[str] = None,
    start: int = 0,
    limit: int = 50,
    fields: Optional[str] = None,
) -> dict[str, Any]:
    """Search issues with JQL. projects_filter is a comma-separated list of project keys."""
    query = (jql or "").strip()
    if not query and not projects_filter:
        raise ValueError("jql must not be empty")
    return run_tool(
        "jira_search_issues",
        lambda: jira_client().search_issues(
            query,
            projects_filter=projects_filter,
            start=max(0, int(start)),
            limit=clamp(limit, MAX_RESULTS_CAP),
            fields=_split_fields(fields),
        ),
    )


@mcp.tool()
def jira_create_issue(
    project_key: str,
    summary: str,
    issue_type: str = "Task",
    description: Optional[str] = None,
    additional_fields: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Create an issue. additional_fields is merged into the issue fields as is."""
    fields: dict[str, Any] = {
        "project": {"key": required_arg("project_key", project_key).upper()},
        "summary": required_arg("summary", summary),
        "issuetype": {"name": required_arg("issue_type", issue_type)},
    }
    if description:
        fields["description"] = description
    fields.update(additional_fields or {})
    return run_tool("jira_create_issue", lambda: unwrap(jira_client().create_issue(fields)))


@mcp.tool()
def jira_update_issue(issue_key: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Update issue fields."""
    key = _issue_key(issue_key)
    if not fields:
        raise ValueError("fields must not be empty")
    return run_tool("jira_update_issue", lambda: unwrap(jira_client().update_issue(key, fields)))


@mcp.tool()
def jira_delete_issue(issue_key: str) -> dict[str, bool]:
    """Delete an issue."""
    key = _issue_key(issue_key)
    return run_tool("jira_delete_issue", lambda: {"success": jira_client().delete_issue(key)})


@mcp.tool()
def jira_batch_create_issues(issues: list[dict[str, Any]], validate_only: bool = False) -> list[dict[str, Any]]:
    """Create several issues at once. Each entry is a Jira fields object."""
    return run_tool("jira_batch_create_issues", lambda: jira_client().batch_create_issues(issues, validate_only))


@mcp.tool()
def jira_get_issue_changelog(issue_key: str, start_at: int = 0, max_results: int = 100) -> dict[str, Any]:
    """Get the change history of an issue."""
    key = _issue_key(issue_key)
    return run_tool(
        "jira_get_issue_changelog",
        lambda: jira_client().get_issue_changelog(key, max(0, int(start_at)), clamp(max_results, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_get_board_issues(board_id: str, jql: str = "", start: int = 0, limit: int = 50) -> dict[str, Any]:
    """List issues on an agile board, optionally filtered with JQL."""
    board = required_arg("board_id", board_id)
    return run_tool(
        "jira_get_board_issues",
        lambda: jira_client().get_board_issues(board, (jql or "").strip(), max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_get_sprint_issues(sprint_id: str, start: int = 0, limit: int = 50) -> dict[str, Any]:
    """List issues in a sprint."""
    sprint = required_arg("sprint_id", sprint_id)
    return run_tool(
        "jira_get_sprint_issues",
        lambda: jira_client().get_sprint_issues(sprint, max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_get_issue_comments(issue_key: str, limit: int = 50) -> list[dict[str, Any]]:
    """List comments on an issue."""
    key = _issue_key(issue_key)
    return run_tool("jira_get_issue_comments", lambda: jira_client().get_issue_comments(key, clamp(limit, MAX_RESULTS_CAP)))


@mcp.tool()
def jira_add_comment(issue_key: str, comment: str) -> dict[str, Any]:
    """Add a comment. Markdown headings, emphasis, code and links are converted to Jira markup."""
    key = _issue_key(issue_key)
    body = required_arg("comment", comment)
    return run_tool("jira_add_comment", lambda: jira_client().add_comment(key, body))


@mcp.tool()
def jira_get_all_projects(include_archived: bool = False) -> list[dict[str, Any]]:
    """List projects visible to the current user."""
    return run_tool("jira_get_all_projects", lambda: jira_client().get_all_projects(include_archived))


@mcp.tool()
def jira_get_project(project_key: str) -> Optional[dict[str, Any]]:
    """Get a project, or null when it does not exist."""
    key = required_arg("project_key", project_key).upper()
    return run_tool("jira_get_project", lambda: jira_client().get_project(key))


@mcp.tool()
def jira_project_exists(project_key: str) -> dict[str, bool]:
    """Check whether a project exists and is visible."""
    key = _project_key(project_key)
    return run_tool("jira_project_exists", lambda: {"exists": jira_client().project_exists(key)})


@mcp.tool()
def jira_get_project_roles(project_key: str) -> dict[str, Any]:
    """Map of role names to role URLs for a project."""
    key = _project_key(project_key)
    return run_tool("jira_get_project_roles", lambda: jira_client().get_project_roles(key))


@mcp.tool()
def jira_get_my_project_permissions(project_key: str) -> dict[str, Any]:
    """Permissions the current user holds in a project."""
    key = _project_key(project_key)
    return run_tool("jira_get_my_project_permissions", lambda: jira_client().get_my_project_permissions(key))


@mcp.tool()
def jira_get_project_issue_types(project_key: str) -> list[dict[str, Any]]:
    key = _project_key(project_key)
    return run_tool("jira_get_project_issue_types", lambda: jira_client().get_project_issue_types(key))


@mcp.tool()
def jira_get_project_issues_count(project_key: str) -> dict[str, int]:
    """Count the issues of a project without fetching them."""
    key = _project_key(project_key)
    return run_tool("jira_get_project_issues_count", lambda: {"count": jira_client().get_project_issues_count(key)})


@mcp.tool()
def jira_get_project_issues(project_key: str, start: int = 0, limit: int = 50) -> dict[str, Any]:
    """List the issues of a project."""
    key = _project_key(project_key)
    return run_tool(
        "jira_get_project_issues",
        lambda: jira_client().get_project_issues(key, max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_get_project_statuses(project_key: str) -> list[dict[str, Any]]:
    """List statuses per issue type for a project."""
    key = _project_key(project_key)
    return run_tool("jira_get_project_statuses", lambda: jira_client().get_project_statuses(key))


@mcp.tool()
def jira_get_project_priorities() -> list[dict[str, Any]]:
    """List the priorities defined on the instance."""
    return run_tool("jira_get_project_priorities", lambda: jira_client().get_priorities())


@mcp.tool()
def jira_get_project_resolutions() -> list[dict[str, Any]]:
    return run_tool("jira_get_project_resolutions", lambda: jira_client().get_resolutions())


@mcp.tool()
def jira_get_project_components(project_key: str) -> list[dict[str, Any]]:
    """List components of a project."""
    key = required_arg("project_key", project_key).upper()
    return run_tool("jira_get_project_components", lambda: jira_client().get_project_components(key))


@mcp.tool()
def jira_get_project_versions(project_key: str) -> list[dict[str, Any]]:
    """List versions of a project."""
    key = required_arg("project_key", project_key).upper()
    return run_tool("jira_get_project_versions", lambda: jira_client().get_project_versions(key))


@mcp.tool()
def jira_create_project_version(
    project_key: str,
    name: str,
    start_date: Optional[str] = None,
    release_date: Optional[str] = None,
    description: Optional[str] = None,
) -> dict[str, Any]:
    """Create a project version. Dates are YYYY-MM-DD."""
    key = required_arg("project_key", project_key).upper()
    version_name = required_arg("name", name)
    return run_tool(
        "jira_create_project_version",
        lambda: jira_client().create_project_version(key, version_name, start_date, release_date, description),
    )


@mcp.tool()
def jira_get_all_agile_boards(
    board_name: Optional[str] = None,
    project_key: Optional[str] = None,
    board_type: Optional[str] = None,
    start: int = 0,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """List agile boards, filtered by name, project or type (scrum, kanban)."""
    return run_tool(
        "jira_get_all_agile_boards",
        lambda: jira_client().get_agile_boards(
            board_name, project_key, board_type, max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)
        ),
    )


@mcp.tool()
def jira_get_all_sprints_from_board(
    board_id: str, state: Optional[str] = None, start: int = 0, limit: int = 50
) -> list[dict[str, Any]]:
    """List sprints of a board (state: future, active, closed)."""
    board = required_arg("board_id", board_id)
    return run_tool(
        "jira_get_all_sprints_from_board",
        lambda: jira_client().get_board_sprints(board, state, max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_create_sprint(
    board_id: str,
    name: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    goal: Optional[str] = None,
) -> dict[str, Any]:
    """Create a sprint on a board."""
    board = required_arg("board_id", board_id)
    sprint_name = required_arg("name", name)
    return run_tool(
        "jira_create_sprint",
        lambda: jira_client().create_sprint(board, sprint_name, start_date, end_date, goal),
    )


@mcp.tool()
def jira_update_sprint(
    sprint_id: str,
    name: Optional[str] = None,
    state: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    goal: Optional[str] = None,
) -> Optional[dict[str, Any]]:
    """Update sprint name, state, dates or goal."""
    sprint = required_arg("sprint_id", sprint_id)
    return run_tool(
        "jira_update_sprint",
        lambda: jira_client().update_sprint(sprint, name, state, start_date, end_date, goal),
    )


@mcp.tool()
def jira_start_sprint(sprint_id: str) -> Optional[dict[str, Any]]:
    """Move a sprint to the active state."""
    sprint = required_arg("sprint_id", sprint_id)
    return run_tool("jira_start_sprint", lambda: jira_client().start_sprint(sprint))


@mcp.tool()
def jira_complete_sprint(sprint_id: str) -> Optional[dict[str, Any]]:
    """Move a sprint to the closed state."""
    sprint = required_arg("sprint_id", sprint_id)
    return run_tool("jira_complete_sprint", lambda: jira_client().complete_sprint(sprint))


@mcp.tool()
def jira_get_all_active_sprints(start: int = 0, limit: int = 50) -> list[dict[str, Any]]:
    """List active sprints across every scrum board."""
    return run_tool(
        "jira_get_all_active_sprints",
        lambda: jira_client().get_all_active_sprints(max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_get_sprint_details(sprint_id: str) -> dict[str, Any]:
    """Get sprint details."""
    sprint = required_arg("sprint_id", sprint_id)
    return run_tool("jira_get_sprint_details", lambda: jira_client().get_sprint(sprint))


@mcp.tool()
def jira_link_issue_to_epic(issue_key: str, epic_key: str) -> dict[str, Any]:
    """Link an issue to an epic through the Epic Link field."""
    key = _issue_key(issue_key)
    epic = required_arg("epic_key", epic_key).upper()
    return run_tool("jira_link_issue_to_epic", lambda: jira_client().link_issue_to_epic(key, epic))


@mcp.tool()
def jira_get_epic_issues(epic_key: str, start: int = 0, limit: int = 50) -> list[dict[str, Any]]:
    """List issues linked to an epic."""
    epic = required_arg("epic_key", epic_key).upper()
    return run_tool(
        "jira_get_epic_issues",
        lambda: jira_client().get_epic_issues(epic, max(0, int(start)), clamp(limit, MAX_RESULTS_CAP)),
    )


@mcp.tool()
def jira_add_worklog(
    issue_key: str,
    time_spent: str,
    comment: Optional[str] = None,
    started: Optional[str] = None,
    original_estimate: Optional[str] = None,
    remaining_estimate: Optional[str] = None,
) -> dict[str, Any]:
    """Log work on an issue. time_spent uses Jira duration syntax such as 1h 30m."""
    key = _issue_key(issue_key)
    spent = required_arg("time_spent", time_spent)
    return run_tool(
        "jira_add_worklog",
        lambda: jira_client().add_worklog(key, spent, comment, started, original_estimate, remaining_estimate),
    )


@mcp.tool()
def jira_get_worklogs(issue_key: str) -> list[dict[str, Any]]:
    """List worklogs of an issue."""
    key = _issue_key(issue_key)
    return run_tool("jira_get_worklogs", lambda: jira_client().get_worklogs(key))


@mcp.tool()
def jira_get_available_transitions(issue_key: str) -> list[dict[str, Any]]:
    """List workflow transitions available for an issue."""
    key = _issue_key(issue_key)
    return run_tool("jira_get_available_transitions", lambda: jira_client().get_transitions(key))


@mcp.tool()
def jira_transition_issue(
    issue_key: str,
    transition_id: str,
    fields: Optional[dict[str, Any]] = None,
    comment: Optional[str] = None,
) -> dict[str, Any]:
    """Apply a workflow transition, optionally setting fields and adding a comment."""
    key = _issue_key(issue_key)
    transition = required_arg("transition_id", transition_id)
    return run_tool(
        "jira_transition_issue",
        lambda: jira_client().transition_issue(key, transition, fields, comment),
    )


@mcp.tool()
def jira_get_fields(refresh: bool = False) -> list[dict[str, Any]]:
    """List every field, system and custom. Results are cached until refresh is set."""
    return run_tool("jira_get_fields", lambda: jira_client().get_fields(refresh))


@mcp.tool()
def jira_get_field_by_id(field_id: str, refresh: bool = False) -> Optional[dict[str, Any]]:
    """Get field metadata by id (example: customfield_10010), or null."""
    wanted = required_arg("field_id", field_id)
    return run_tool("jira_get_field_by_id", lambda: jira_client().get_field_by_id(wanted, refresh))


@mcp.tool()
def jira_search_fields(keyword: str, limit: int = 10, refresh: bool = False) -> list[dict[str, Any]]:
    """Find fields whose name, id or JQL clause name contains keyword."""
    needle = required_arg("keyword", keyword)
    return run_tool(
        "jira_search_fields",
        lambda: jira_client().search_fields(needle, clamp(limit, MAX_RESULTS_CAP), refresh),
    )


@mcp.tool()
def jira_get_field_id(field_name: str, refresh: bool = False) -> dict[str, Optional[str]]:
    """Resolve a field name or JQL clause name to its field id."""
    name = required_arg("field_name", field_name)
    return run_tool("jira_get_field_id", lambda: {"fieldId": jira_client().get_field_id(name, refresh)})


@mcp.tool()
def jira_get_custom_fields(refresh: bool = False) -> list[dict[str, Any]]:
    """List custom fields."""
    return run_tool("jira_get_custom_fields", lambda: jira_client().get_custom_fields(refresh))


@mcp.tool()
def jira_get_field_ids_to_epic() -> dict[str, str]:
    """Get the ids of the Epic Link and Epic Name fields."""
    return run_tool("jira_get_field_ids_to_epic", lambda: jira_client().get_epic_field_ids())


@mcp.tool()
def jira_get_required_fields(issue_type: str, project_key: str) -> dict[str, Any]:
    """Get the fields required to create an issue of a type in a project."""
    kind = required_arg("issue_type", issue_type)
    key = required_arg("project_key", project_key).upper()
    return run_tool("jira_get_required_fields", lambda: jira_client().get_required_fields(kind, key))


@mcp.tool()
def jira_get_issue_picker_suggestions(
    query: str,
    current_issue_key: Optional[str] = None,
    current_project_id: Optional[str] = None,
) -> dict[str, Any]:
    """Issue suggestions for a partial key or summary text."""
    text = required_arg("query", query)
    issue = current_issue_key.strip().upper() if current_issue_key and current_issue_key.strip() else None
    return run_tool(
        "jira_get_issue_picker_suggestions",
        lambda: jira_client().get_issue_picker_suggestions(text, issue, current_project_id),
    )


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
