from __future__ import annotations

import re
from typing import Any, Optional
from urllib.parse import quote

from shared.http_client import HttpClient, UpstreamError
from shared.logging import get_logger
from shared.pagination import Paginator
from shared.result import Err, ErrorKind, Ok, Result, capture

API = "/rest/api/1.0"

MAX_REPOS_LIMIT = 100
MAX_COMMITS_LIMIT = 30
MAX_PRS_LIMIT = 30
MAX_ACTIVITIES_LIMIT = 100
MAX_COMMENTS_LIMIT = 100
MAX_STRUCTURE_DEPTH = 10

_TASK_CHECKBOX_RE = re.compile(r"^[-*]\s+\[([ xX])\]\s+(.+)$", re.MULTILINE)

logger = get_logger(__name__, platform="bitbucket")


def build_path(template: str, **params: Any) -> str:
    """Fill ``{name}`` placeholders with URL-encoded values (``~user`` projects included)."""
    return re.sub(
        r"\{(\w+)\}",
        lambda m: quote(str(params[m.group(1)]), safe="") if params.get(m.group(1)) is not None else "",
        template,
    )


def _repo_path(project_key: str, repo_slug: str, suffix: str = "") -> str:
    return build_path(API + "/projects/{project_key}/repos/{repo_slug}", project_key=project_key, repo_slug=repo_slug) + suffix


def _pr_path(project_key: str, repo_slug: str, pull_request_id: int, suffix: str = "") -> str:
    return _repo_path(project_key, repo_slug, f"/pull-requests/{int(pull_request_id)}{suffix}")


def _ref_summary(ref: Optional[dict[str, Any]]) -> dict[str, Any]:
    ref = ref or {}
    repository = ref.get("repository") or {}
    return {
        "id": ref.get("id"),
        "displayId": ref.get("displayId"),
        "repository": {"slug": repository.get("slug"), "name": repository.get("name")},
    }


def _user_summary(user: Optional[dict[str, Any]]) -> dict[str, Any]:
    user = user or {}
    return {"displayName": user.get("displayName"), "name": user.get("name")}


def project_pull_request(pr: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": pr.get("id"),
        "title": pr.get("title"),
        "description": pr.get("description"),
        "fromRef": _ref_summary(pr.get("fromRef")),
        "toRef": _ref_summary(pr.get("toRef")),
        "reviewers": [
            {"user": _user_summary(r.get("user")), "status": r.get("status")}
            for r in pr.get("reviewers") or []
        ],
        "author": {"user": _user_summary((pr.get("author") or {}).get("user"))},
    }


def _pull_request_anchor(pull_request_id: int) -> dict[str, Any]:
    return {"id": pull_request_id, "type": "PULL_REQUEST"}


def comment_to_task(comment: dict[str, Any], pull_request_id: int, state: str) -> dict[str, Any]:
    return {
        "id": comment.get("id"),
        "text": comment.get("text"),
        "state": state,
        "author": comment.get("author"),
        "anchor": _pull_request_anchor(pull_request_id),
    }


class BitbucketClient:
    """Bitbucket Server / Data Center REST client.

    Every public method returns ``Ok`` or ``Err``; upstream failures never
    escape as exceptions. List methods share one :class:`Paginator` and accept
    ``fetch_all`` to walk every page up to the aggregate cap.
    """

    def __init__(self, http: HttpClient) -> None:
        self._http = http
        self._paginator = Paginator(http.get, logger=logger)

    def _list(
        self,
        path: str,
        start: Optional[int],
        limit: Optional[int],
        fetch_all: bool,
        max_limit: int,
        params: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        requested = min(limit, max_limit) if limit is not None else None
        page = self._paginator.fetch_values(
            path,
            start=start,
            limit=requested,
            all=fetch_all,
            params=params,
            default_limit=min(25, max_limit),
            description=description,
        )
        return page.to_dict()

    # -- repositories ------------------------------------------------------------

    def list_repositories(
        self, project_key: str, start: Optional[int] = None, limit: Optional[int] = None, fetch_all: bool = False
    ) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            page = self._list(
                build_path(API + "/projects/{project_key}/repos", project_key=project_key),
                start, limit, fetch_all, MAX_REPOS_LIMIT,
                description=f"repositories of {project_key}",
            )
            page["values"] = [{"slug": r.get("slug"), "name": r.get("name")} for r in page["values"]]
            return page

        return capture(_do)

    def get_repository(self, project_key: str, repo_slug: str) -> Result[dict[str, Any]]:
        return capture(lambda: self._http.get(_repo_path(project_key, repo_slug)))

    def get_commits(
        self,
        project_key: str,
        repo_slug: str,
        branch_name: Optional[str] = None,
        start: Optional[int] = None,
        limit: Optional[int] = None,
        fetch_all: bool = False,
    ) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            params = {"until": branch_name} if branch_name else None
            page = self._list(
                _repo_path(project_key, repo_slug, "/commits"),
                start, limit, fetch_all, MAX_COMMITS_LIMIT, params=params,
                description=f"commits of {project_key}/{repo_slug}",
            )
            page["values"] = [
                {"id": c.get("id"), "displayId": c.get("displayId"), "message": c.get("message")}
                for c in page["values"]
            ]
            return page

        return capture(_do)

    def get_file_content(self, project_key: str, repo_slug: str, file_path: str) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            path = _repo_path(project_key, repo_slug, "/browse/" + quote(file_path.lstrip("/"), safe="/"))
            response = self._http.get(path)
            if isinstance(response, dict) and "lines" in response:
                return {
                    "path": file_path,
                    "content": "\n".join(line.get("text", "") for line in response.get("lines") or []),
                    "size": response.get("size", 0),
                    "isLastPage": response.get("isLastPage") is not False,
                }
            return response

        return capture(_do)

    def get_repo_structure(
        self, project_key: str, repo_slug: str, path: str = "", max_depth: int = MAX_STRUCTURE_DEPTH
    ) -> Result[dict[str, Any]]:
        depth = max(1, min(int(max_depth), MAX_STRUCTURE_DEPTH))
        url = _repo_path(project_key, repo_slug, "/files/" + quote(path.lstrip("/"), safe="/"))
        return capture(lambda: self._http.get(url, params={"limit": 100, "max_depth": depth}))

    # -- pull requests -----------------------------------------------------------

    def get_pull_requests(
        self,
        project_key: str,
        repo_slug: str,
        state: str = "OPEN",
        start: Optional[int] = None,
        limit: Optional[int] = None,
        fetch_all: bool = False,
    ) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            page = self._list(
                _repo_path(project_key, repo_slug, "/pull-requests"),
                start, limit, fetch_all, MAX_PRS_LIMIT, params={"state": state},
                description=f"pull requests of {project_key}/{repo_slug}",
            )
            page["values"] = [project_pull_request(pr) for pr in page["values"]]
            return page

        return capture(_do)

    def get_pull_request(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[dict[str, Any]]:
        return capture(lambda: self._http.get(_pr_path(project_key, repo_slug, pull_request_id)))

    def create_pull_request(
        self,
        project_key: str,
        repo_slug: str,
        title: str,
        description: str,
        source_branch: str,
        target_branch: str,
        source_repo_slug: Optional[str] = None,
        reviewers: Optional[list[str]] = None,
    ) -> Result[dict[str, Any]]:
        from_ref: dict[str, Any] = {"id": f"refs/heads/{source_branch}"}
        if source_repo_slug:
            from_ref["repository"] = {"slug": source_repo_slug, "project": {"key": project_key}}
        payload: dict[str, Any] = {
            "title": title,
            "description": description,
            "state": "OPEN",
            "open": True,
            "closed": False,
            "fromRef": from_ref,
            "toRef": {
                "id": f"refs/heads/{target_branch}",
                "repository": {"slug": repo_slug, "project": {"key": project_key}},
            },
        }
        if reviewers:
            payload["reviewers"] = [{"user": {"name": name}} for name in reviewers]
        return capture(lambda: self._http.post(_repo_path(project_key, repo_slug, "/pull-requests"), payload))

    def update_pull_request(
        self,
        project_key: str,
        repo_slug: str,
        pull_request_id: int,
        version: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Result[dict[str, Any]]:
        payload: dict[str, Any] = {"version": version}
        if title is not None:
            payload["title"] = title
        if description is not None:
            payload["description"] = description
        return capture(lambda: self._http.put(_pr_path(project_key, repo_slug, pull_request_id), payload))

    def approve_pull_request(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[dict[str, Any]]:
        return capture(lambda: self._http.post(_pr_path(project_key, repo_slug, pull_request_id, "/approve"), {}))

    def unapprove_pull_request(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[dict[str, Any]]:
        return capture(lambda: self._http.delete(_pr_path(project_key, repo_slug, pull_request_id, "/approve")))

    def decline_pull_request(
        self, project_key: str, repo_slug: str, pull_request_id: int, version: int
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, "/decline")
        return capture(lambda: self._http.post(path, {"version": version}))

    def merge_pull_request(
        self, project_key: str, repo_slug: str, pull_request_id: int, version: int
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, "/merge")
        return capture(lambda: self._http.post(path, {"version": version}))

    def get_pull_request_activity(
        self,
        project_key: str,
        repo_slug: str,
        pull_request_id: int,
        start: Optional[int] = None,
        limit: Optional[int] = None,
        fetch_all: bool = False,
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, "/activities")
        return capture(lambda: self._list(path, start, limit, fetch_all, MAX_ACTIVITIES_LIMIT))

    def get_pull_request_commits(
        self,
        project_key: str,
        repo_slug: str,
        pull_request_id: int,
        start: Optional[int] = None,
        limit: Optional[int] = None,
        fetch_all: bool = False,
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, "/commits")
        return capture(lambda: self._list(path, start, limit, fetch_all, MAX_COMMITS_LIMIT))

    def get_pull_request_diff(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[str]:
        return capture(lambda: self._http.get_text(_pr_path(project_key, repo_slug, pull_request_id, "/diff")))

    def get_pull_request_patch(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[str]:
        return capture(lambda: self._http.get_text(_pr_path(project_key, repo_slug, pull_request_id, ".patch")))

    # -- comments ----------------------------------------------------------------

    def get_pull_request_comments(
        self,
        project_key: str,
        repo_slug: str,
        pull_request_id: int,
        start: Optional[int] = None,
        limit: Optional[int] = None,
        fetch_all: bool = False,
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, "/activities")
        result = capture(lambda: self._list(path, start, limit, fetch_all, MAX_COMMENTS_LIMIT))
        if isinstance(result, Err):
            return result

        page = result.value
        comments = [
            activity["comment"]
            for activity in page["values"]
            if activity.get("action") == "COMMENTED" and activity.get("comment")
        ]
        return Ok({"values": comments, "size": len(comments), "isLastPage": page["isLastPage"]})

    def get_pull_request_comment(
        self, project_key: str, repo_slug: str, pull_request_id: int, comment_id: int
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, f"/comments/{int(comment_id)}")
        return capture(lambda: self._http.get(path))

    def add_pull_request_comment(
        self,
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
        severity: Optional[str] = None,
    ) -> Result[dict[str, Any]]:
        payload: dict[str, Any] = {"text": text}
        if parent_id:
            payload["parent"] = {"id": parent_id}
        if severity:
            payload["severity"] = severity
        if line is not None and file_path and from_hash and to_hash:
            payload["anchor"] = {
                "diffType": "EFFECTIVE",
                "fromHash": from_hash,
                "toHash": to_hash,
                "line": line,
                "lineType": line_type or "CONTEXT",
                "fileType": "TO",
                "path": file_path,
            }
        path = _pr_path(project_key, repo_slug, pull_request_id, "/comments")
        return capture(lambda: self._http.post(path, payload))

    def update_pull_request_comment(
        self,
        project_key: str,
        repo_slug: str,
        pull_request_id: int,
        comment_id: int,
        text: str,
        version: int,
        severity: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Result[dict[str, Any]]:
        payload: dict[str, Any] = {"text": text, "version": version}
        if severity is not None:
            payload["severity"] = severity
        if state is not None:
            payload["state"] = state
        path = _pr_path(project_key, repo_slug, pull_request_id, f"/comments/{int(comment_id)}")
        return capture(lambda: self._http.put(path, payload))

    def delete_pull_request_comment(
        self, project_key: str, repo_slug: str, pull_request_id: int, comment_id: int, version: int
    ) -> Result[dict[str, Any]]:
        path = _pr_path(project_key, repo_slug, pull_request_id, f"/comments/{int(comment_id)}")

        def _do() -> dict[str, Any]:
            self._http.delete(path, params={"version": version})
            return {"success": True}

        return capture(_do)

    # -- tasks -------------------------------------------------------------------

    def get_pull_request_tasks(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[dict[str, Any]]:
        """List tasks, trying blocker comments (7.0+), then the legacy task API,
        then deriving pseudo-tasks from the pull request itself."""
        try:
            response = self._http.get(_pr_path(project_key, repo_slug, pull_request_id, "/blocker-comments"))
        except UpstreamError as exc:
            logger.info("blocker-comments unavailable, trying legacy tasks", extra={"status_code": exc.status_code})
        else:
            if isinstance(response, dict) and isinstance(response.get("values"), list):
                tasks = [
                    {
                        "id": c.get("id"),
                        "text": c.get("text"),
                        "state": c.get("state"),
                        "author": c.get("author"),
                        "createdDate": c.get("createdDate"),
                        "updatedDate": c.get("updatedDate"),
                        "severity": c.get("severity"),
                        "anchor": _pull_request_anchor(pull_request_id),
                    }
                    for c in response["values"]
                ]
                return Ok({"values": tasks, "size": response.get("size", len(tasks)), "isLastPage": response.get("isLastPage", True)})
            return Ok(response)

        try:
            return Ok(self._http.get(_pr_path(project_key, repo_slug, pull_request_id, "/tasks")))
        except UpstreamError as exc:
            logger.info("legacy tasks unavailable, deriving tasks", extra={"status_code": exc.status_code})

        return self._derive_pull_request_tasks(project_key, repo_slug, pull_request_id)

    def _derive_pull_request_tasks(self, project_key: str, repo_slug: str, pull_request_id: int) -> Result[dict[str, Any]]:
        pr_result = self.get_pull_request(project_key, repo_slug, pull_request_id)
        if isinstance(pr_result, Err):
            return pr_result
        pr = pr_result.value or {}

        tasks: list[dict[str, Any]] = []
        # Negative ids keep derived tasks apart from real ones.
        for reviewer in pr.get("reviewers") or []:
            if reviewer.get("status") == "APPROVED":
                continue
            user = reviewer.get("user") or {}
            tasks.append(
                {
                    "id": -(len(tasks) + 1),
                    "text": f"Get approval from {user.get('displayName') or user.get('name')}",
                    "state": "OPEN",
                    "author": {"name": "system", "displayName": "System Generated"},
                    "anchor": _pull_request_anchor(pull_request_id),
                }
            )

        author = (pr.get("author") or {}).get("user") or {}
        for match in _TASK_CHECKBOX_RE.finditer(pr.get("description") or ""):
            tasks.append(
                {
                    "id": -(len(tasks) + 1),
                    "text": match.group(2).strip(),
                    "state": "RESOLVED" if match.group(1).lower() == "x" else "OPEN",
                    "author": {
                        "name": author.get("name") or "unknown",
                        "displayName": author.get("displayName") or "Unknown",
                    },
                    "anchor": _pull_request_anchor(pull_request_id),
                }
            )

        return Ok({"values": tasks, "size": len(tasks), "isLastPage": True})

    def create_pull_request_task(
        self, project_key: str, repo_slug: str, pull_request_id: int, text: str
    ) -> Result[dict[str, Any]]:
        payload = {"anchor": _pull_request_anchor(pull_request_id), "text": text}
        try:
            return Ok(self._http.post(API + "/tasks", payload))
        except UpstreamError as exc:
            logger.info("task API unavailable, creating BLOCKER comment", extra={"status_code": exc.status_code})

        comment = self.add_pull_request_comment(project_key, repo_slug, pull_request_id, text, severity="BLOCKER")
        if isinstance(comment, Err):
            return Err(comment.kind, f"Failed to create task: {comment.message}")
        return Ok(comment_to_task(comment.value, pull_request_id, "OPEN"))

    def get_pull_request_task(
        self, task_id: int, project_key: str, repo_slug: str, pull_request_id: int
    ) -> Result[dict[str, Any]]:
        try:
            return Ok(self._http.get(f"{API}/tasks/{int(task_id)}"))
        except UpstreamError:
            pass

        comment = self.get_pull_request_comment(project_key, repo_slug, pull_request_id, task_id)
        if isinstance(comment, Err):
            return Err(comment.kind, f"Task not found: {comment.message}")
        nested = comment.value.get("tasks") or []
        state = nested[0].get("state", "OPEN") if nested else comment.value.get("state") or "OPEN"
        return Ok(comment_to_task(comment.value, pull_request_id, state))

    def update_pull_request_task(
        self,
        task_id: int,
        text: Optional[str] = None,
        state: Optional[str] = None,
        project_key: Optional[str] = None,
        repo_slug: Optional[str] = None,
        pull_request_id: Optional[int] = None,
    ) -> Result[dict[str, Any]]:
        payload: dict[str, Any] = {}
        if text is not None:
            payload["text"] = text
        if state is not None:
            payload["state"] = state
        try:
            return Ok(self._http.put(f"{API}/tasks/{int(task_id)}", payload))
        except UpstreamError:
            pass

        if not project_key or not repo_slug or not pull_request_id:
            return Err(ErrorKind.BAD_REQUEST, "Project key, repo slug, and PR ID required")

        comment = self.get_pull_request_comment(project_key, repo_slug, pull_request_id, task_id)
        if isinstance(comment, Err):
            return Err(comment.kind, f"Task not found: {comment.message}")

        updated = self.update_pull_request_comment(
            project_key,
            repo_slug,
            pull_request_id,
            task_id,
            text if text is not None else comment.value.get("text") or "",
            comment.value.get("version", 0),
            severity="BLOCKER",
            state=state,
        )
        if isinstance(updated, Err):
            return Err(updated.kind, f"Failed to update task: {updated.message}")
        return Ok(comment_to_task(updated.value, pull_request_id, state or "OPEN"))

    def delete_pull_request_task(self, task_id: int) -> Result[dict[str, Any]]:
        def _do() -> dict[str, Any]:
            self._http.delete(f"{API}/tasks/{int(task_id)}")
            return {"success": True}

        return capture(_do)

    # -- branch model and reviewers ----------------------------------------------

    def get_branching_model(self, project_key: str, repo_slug: str) -> Result[dict[str, Any]]:
        return capture(lambda: self._http.get(_repo_path(project_key, repo_slug, "/branchmodel/configuration")))

    def update_branching_model_settings(
        self,
        project_key: str,
        repo_slug: str,
        development: Optional[dict[str, Any]] = None,
        production: Optional[dict[str, Any]] = None,
        types: Optional[list[dict[str, Any]]] = None,
    ) -> Result[dict[str, Any]]:
        payload: dict[str, Any] = {}
        if development:
            payload["development"] = development
        if production:
            payload["production"] = production
        if types:
            payload["types"] = types
        path = _repo_path(project_key, repo_slug, "/branchmodel/configuration")
        return capture(lambda: self._http.put(path, payload))

    def get_default_reviewer_conditions(self, project_key: str, repo_slug: str) -> Result[dict[str, Any]]:
        path = build_path(
            "/rest/default-reviewers/1.0/projects/{project_key}/repos/{repo_slug}/conditions",
            project_key=project_key,
            repo_slug=repo_slug,
        )

        def _do() -> dict[str, Any]:
            response = self._http.get(path)
            return {"conditions": response if isinstance(response, list) else []}

        return capture(_do)

    def get_pending_review_prs(self, project_key: str, repo_slug: Optional[str] = None) -> Result[list[dict[str, Any]]]:
        """Open pull requests of one repository, or of every repository in the project."""
        if repo_slug:
            slugs: list[str] = [repo_slug]
        else:
            repos = self.list_repositories(project_key, fetch_all=True)
            if isinstance(repos, Err):
                return repos
            slugs = [r["slug"] for r in repos.value["values"] if r.get("slug")]

        pull_requests: list[dict[str, Any]] = []
        for slug in slugs:
            page = self.get_pull_requests(project_key, slug, state="OPEN", fetch_all=True)
            if isinstance(page, Err):
                return page
            pull_requests.extend(page.value["values"])
        return Ok(pull_requests)
