from __future__ import annotations

from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from mcp_server.common import (
    bitbucket_client,
    clamp,
    require_dangerous_tools,
    required_arg,
    run_tool,
    unwrap,
)
from shared.bitbucket_client import MAX_STRUCTURE_DEPTH

mcp = FastMCP("bitbucket")

_PR_STATES = {"OPEN", "MERGED", "DECLINED", "ALL"}
_TASK_STATES = {"OPEN", "RESOLVED"}


def _repo(project_key: str, repo_slug: str) -> tuple[str, str]:
    return required_arg("project_key", project_key), required_arg("repo_slug", repo_slug)


@mcp.tool()
def bitbucket_list_repositories(
    project_key: str, start: Optional[int] = None, limit: Optional[int] = None, fetch_all: bool = False
) -> dict[str, Any]:
    """List repositories in a project. fetch_all walks every page (up to 1000 items)."""
    key = required_arg("project_key", project_key)
    return run_tool(
        "bitbucket_list_repositories",
        lambda: unwrap(bitbucket_client().list_repositories(key, start=start, limit=limit, fetch_all=fetch_all)),
    )


@mcp.tool()
def bitbucket_get_repository(project_key: str, repo_slug: str) -> dict[str, Any]:
    """Get repository details."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool("bitbucket_get_repository", lambda: unwrap(bitbucket_client().get_repository(key, slug)))


@mcp.tool()
def bitbucket_get_pull_requests(
    project_key: str,
    repo_slug: str,
    state: str = "OPEN",
    start: Optional[int] = None,
    limit: Optional[int] = None,
    fetch_all: bool = False,
) -> dict[str, Any]:
    """List pull requests of a repository (state: OPEN, MERGED, DECLINED, ALL)."""
    key, slug = _repo(project_key, repo_slug)
    pr_state = (state or "OPEN").strip().upper()
    if pr_state not in _PR_STATES:
        raise ValueError(f"state must be one of {', '.join(sorted(_PR_STATES))}")
    return run_tool(
        "bitbucket_get_pull_requests",
        lambda: unwrap(
            bitbucket_client().get_pull_requests(key, slug, state=pr_state, start=start, limit=limit, fetch_all=fetch_all)
        ),
    )


@mcp.tool()
def bitbucket_create_pull_request(
    project_key: str,
    repo_slug: str,
    title: str,
    source_branch: str,
    target_branch: str,
    description: str = "",
    source_repo_slug: Optional[str] = None,
    reviewers: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Create a pull request. source_repo_slug is only needed for cross-repository PRs."""
    key, slug = _repo(project_key, repo_slug)
    pr_title = required_arg("title", title)
    source = required_arg("source_branch", source_branch)
    target = required_arg("target_branch", target_branch)
    return run_tool(
        "bitbucket_create_pull_request",
        lambda: unwrap(
            bitbucket_client().create_pull_request(
                key, slug, pr_title, description or "", source, target, source_repo_slug, reviewers
            )
        ),
    )


@mcp.tool()
def bitbucket_get_pull_request(project_key: str, repo_slug: str, pull_request_id: int) -> dict[str, Any]:
    """Get one pull request."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request",
        lambda: unwrap(bitbucket_client().get_pull_request(key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_update_pull_request(
    project_key: str,
    repo_slug: str,
    pull_request_id: int,
    version: int,
    title: Optional[str] = None,
    description: Optional[str] = None,
) -> dict[str, Any]:
    """Update a pull request title or description. version must match the current PR version."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_update_pull_request",
        lambda: unwrap(bitbucket_client().update_pull_request(key, slug, pull_request_id, version, title, description)),
    )


@mcp.tool()
def bitbucket_approve_pull_request(project_key: str, repo_slug: str, pull_request_id: int) -> dict[str, Any]:
    """Approve a pull request as the current user."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_approve_pull_request",
        lambda: unwrap(bitbucket_client().approve_pull_request(key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_unapprove_pull_request(project_key: str, repo_slug: str, pull_request_id: int) -> dict[str, Any]:
    """Withdraw the current user's approval."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_unapprove_pull_request",
        lambda: unwrap(bitbucket_client().unapprove_pull_request(key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_decline_pull_request(project_key: str, repo_slug: str, pull_request_id: int, version: int) -> dict[str, Any]:
    """Decline a pull request. Requires BITBUCKET_ENABLE_DANGEROUS=true."""
    require_dangerous_tools("bitbucket_decline_pull_request")
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_decline_pull_request",
        lambda: unwrap(bitbucket_client().decline_pull_request(key, slug, pull_request_id, version)),
    )


@mcp.tool()
def bitbucket_merge_pull_request(project_key: str, repo_slug: str, pull_request_id: int, version: int) -> dict[str, Any]:
    """Merge a pull request. Requires BITBUCKET_ENABLE_DANGEROUS=true."""
    require_dangerous_tools("bitbucket_merge_pull_request")
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_merge_pull_request",
        lambda: unwrap(bitbucket_client().merge_pull_request(key, slug, pull_request_id, version)),
    )


@mcp.tool()
def bitbucket_get_pull_request_activity(
    project_key: str,
    repo_slug: str,
    pull_request_id: int,
    start: Optional[int] = None,
    limit: Optional[int] = None,
    fetch_all: bool = False,
) -> dict[str, Any]:
    """Get the activity stream of a pull request."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_activity",
        lambda: unwrap(
            bitbucket_client().get_pull_request_activity(key, slug, pull_request_id, start, limit, fetch_all)
        ),
    )


@mcp.tool()
def bitbucket_get_pull_request_commits(
    project_key: str,
    repo_slug: str,
    pull_request_id: int,
    start: Optional[int] = None,
    limit: Optional[int] = None,
    fetch_all: bool = False,
) -> dict[str, Any]:
    """List commits of a pull request."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_commits",
        lambda: unwrap(
            bitbucket_client().get_pull_request_commits(key, slug, pull_request_id, start, limit, fetch_all)
        ),
    )


@mcp.tool()
def bitbucket_get_pull_request_diff(project_key: str, repo_slug: str, pull_request_id: int) -> str:
    """Get the diff of a pull request as text."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_diff",
        lambda: unwrap(bitbucket_client().get_pull_request_diff(key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_get_pull_request_patch(project_key: str, repo_slug: str, pull_request_id: int) -> str:
    """Get a pull request as a git patch."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_patch",
        lambda: unwrap(bitbucket_client().get_pull_request_patch(key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_get_pull_request_comments(
    project_key: str,
    repo_slug: str,
    pull_request_id: int,
    start: Optional[int] = None,
    limit: Optional[int] = None,
    fetch_all: bool = False,
) -> dict[str, Any]:
    """List comments on a pull request."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_comments",
        lambda: unwrap(
            bitbucket_client().get_pull_request_comments(key, slug, pull_request_id, start, limit, fetch_all)
        ),
    )


@mcp.tool()
def bitbucket_get_pull_request_comment(
    project_key: str, repo_slug: str, pull_request_id: int, comment_id: int
) -> dict[str, Any]:
    """Get one pull request comment."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_comment",
        lambda: unwrap(bitbucket_client().get_pull_request_comment(key, slug, pull_request_id, comment_id)),
    )


@mcp.tool()
def bitbucket_add_pull_request_comment(
    project_key: str,
    repo_slug: str,
    pull_request_id: int,
    text: str,
    parent_id: Optional[int] = None,
    line: Optional[int] = None,
    file_path: Optional[str] = None,
    line_type: Optional[str] = None,
    from_hash: Optional[str] = None,
    to_hash: Optional[str] = None,
) -> dict[str, Any]:
    """Add a comment, a reply (parent_id) or an inline comment (line, file_path, from_hash, to_hash)."""
    key, slug = _repo(project_key, repo_slug)
    body = required_arg("text", text)
    return run_tool(
        "bitbucket_add_pull_request_comment",
        lambda: unwrap(
            bitbucket_client().add_pull_request_comment(
                key,
                slug,
                pull_request_id,
                body,
                parent_id=parent_id,
                line=line,
                file_path=file_path,
                line_type=line_type,
                from_hash=from_hash,
                to_hash=to_hash,
            )
        ),
    )


@mcp.tool()
def bitbucket_update_pull_request_comment(
    project_key: str, repo_slug: str, pull_request_id: int, comment_id: int, text: str, version: int
) -> dict[str, Any]:
    """Edit a comment. version must match the current comment version."""
    key, slug = _repo(project_key, repo_slug)
    body = required_arg("text", text)
    return run_tool(
        "bitbucket_update_pull_request_comment",
        lambda: unwrap(
            bitbucket_client().update_pull_request_comment(key, slug, pull_request_id, comment_id, body, version)
        ),
    )


@mcp.tool()
def bitbucket_delete_pull_request_comment(
    project_key: str, repo_slug: str, pull_request_id: int, comment_id: int, version: int
) -> dict[str, Any]:
    """Delete a comment. Requires BITBUCKET_ENABLE_DANGEROUS=true."""
    require_dangerous_tools("bitbucket_delete_pull_request_comment")
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_delete_pull_request_comment",
        lambda: unwrap(
            bitbucket_client().delete_pull_request_comment(key, slug, pull_request_id, comment_id, version)
        ),
    )


@mcp.tool()
def bitbucket_get_pull_request_tasks(project_key: str, repo_slug: str, pull_request_id: int) -> dict[str, Any]:
    """List tasks of a pull request. Older servers get tasks derived from reviewers and checklists."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_tasks",
        lambda: unwrap(bitbucket_client().get_pull_request_tasks(key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_create_pull_request_task(project_key: str, repo_slug: str, pull_request_id: int, text: str) -> dict[str, Any]:
    """Create a task on a pull request."""
    key, slug = _repo(project_key, repo_slug)
    body = required_arg("text", text)
    return run_tool(
        "bitbucket_create_pull_request_task",
        lambda: unwrap(bitbucket_client().create_pull_request_task(key, slug, pull_request_id, body)),
    )


@mcp.tool()
def bitbucket_get_pull_request_task(project_key: str, repo_slug: str, pull_request_id: int, task_id: int) -> dict[str, Any]:
    """Get one task."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_pull_request_task",
        lambda: unwrap(bitbucket_client().get_pull_request_task(task_id, key, slug, pull_request_id)),
    )


@mcp.tool()
def bitbucket_update_pull_request_task(
    task_id: int,
    text: Optional[str] = None,
    state: Optional[str] = None,
    project_key: Optional[str] = None,
    repo_slug: Optional[str] = None,
    pull_request_id: Optional[int] = None,
) -> dict[str, Any]:
    """Update task text or state (OPEN, RESOLVED). Repository arguments enable the comment fallback."""
    task_state = state.strip().upper() if state else None
    if task_state is not None and task_state not in _TASK_STATES:
        raise ValueError("state must be OPEN or RESOLVED")
    return run_tool(
        "bitbucket_update_pull_request_task",
        lambda: unwrap(
            bitbucket_client().update_pull_request_task(task_id, text, task_state, project_key, repo_slug, pull_request_id)
        ),
    )


@mcp.tool()
def bitbucket_delete_pull_request_task(task_id: int) -> dict[str, Any]:
    """Delete a task. Requires BITBUCKET_ENABLE_DANGEROUS=true."""
    require_dangerous_tools("bitbucket_delete_pull_request_task")
    return run_tool(
        "bitbucket_delete_pull_request_task",
        lambda: unwrap(bitbucket_client().delete_pull_request_task(task_id)),
    )


@mcp.tool()
def bitbucket_get_commits(
    project_key: str,
    repo_slug: str,
    branch: Optional[str] = None,
    start: Optional[int] = None,
    limit: Optional[int] = None,
    fetch_all: bool = False,
) -> dict[str, Any]:
    """List commits, optionally up to a branch."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_commits",
        lambda: unwrap(bitbucket_client().get_commits(key, slug, branch, start, limit, fetch_all)),
    )


@mcp.tool()
def bitbucket_get_file_content(project_key: str, repo_slug: str, file_path: str) -> dict[str, Any]:
    """Get the content of a file on the default branch."""
    key, slug = _repo(project_key, repo_slug)
    path = required_arg("file_path", file_path)
    return run_tool(
        "bitbucket_get_file_content",
        lambda: unwrap(bitbucket_client().get_file_content(key, slug, path)),
    )


@mcp.tool()
def bitbucket_get_repo_structure(
    project_key: str, repo_slug: str, path: str = "", max_depth: int = MAX_STRUCTURE_DEPTH
) -> dict[str, Any]:
    """List files below a path."""
    key, slug = _repo(project_key, repo_slug)
    depth = clamp(max_depth, MAX_STRUCTURE_DEPTH)
    return run_tool(
        "bitbucket_get_repo_structure",
        lambda: unwrap(bitbucket_client().get_repo_structure(key, slug, (path or "").strip(), depth)),
    )


@mcp.tool()
def bitbucket_get_repository_branching_model(project_key: str, repo_slug: str) -> dict[str, Any]:
    """Get the branching model configuration."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_repository_branching_model",
        lambda: unwrap(bitbucket_client().get_branching_model(key, slug)),
    )


@mcp.tool()
def bitbucket_update_repository_branching_model_settings(
    project_key: str,
    repo_slug: str,
    development: Optional[dict[str, Any]] = None,
    production: Optional[dict[str, Any]] = None,
    types: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    """Update the development and production branches and branch type prefixes."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_update_repository_branching_model_settings",
        lambda: unwrap(bitbucket_client().update_branching_model_settings(key, slug, development, production, types)),
    )


@mcp.tool()
def bitbucket_get_effective_default_reviewers(project_key: str, repo_slug: str) -> dict[str, Any]:
    """Get default reviewer conditions of a repository."""
    key, slug = _repo(project_key, repo_slug)
    return run_tool(
        "bitbucket_get_effective_default_reviewers",
        lambda: unwrap(bitbucket_client().get_default_reviewer_conditions(key, slug)),
    )


@mcp.tool()
def bitbucket_get_pending_review_prs(project_key: str, repo_slug: Optional[str] = None) -> list[dict[str, Any]]:
    """List open pull requests of a repository, or of every repository in the project."""
    key = required_arg("project_key", project_key)
    slug = (repo_slug or "").strip() or None
    return run_tool(
        "bitbucket_get_pending_review_prs",
        lambda: unwrap(bitbucket_client().get_pending_review_prs(key, slug)),
    )


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
