from __future__ import annotations

from typing import Any, Optional

from mcp.server.fastmcp import FastMCP, Image
from pydantic import ValidationError

from mcp_server.common import clamp, confluence_client, required_arg, run_tool
from shared.schema import CreatePageInput, UpdatePageInput

mcp = FastMCP("confluence")

MAX_PAGE_LIMIT = 100


def _page_id(page_id: str) -> str:
    return required_arg("page_id", page_id)


@mcp.tool()
def confluence_get_page_content(
    page_id: str, convert_to_markdown: bool = True, enable_heading_anchors: bool = False
):
    """Fetch a page body, plus images of the attachments it references.

    Markdown output is for reading only; re-fetch with convert_to_markdown=false
    before editing the page.
    """
    pid = _page_id(page_id)

    def _do() -> list[Any]:
        result = confluence_client().get_page_content(pid, convert_to_markdown, enable_heading_anchors)
        images = [
            Image(data=image["data"], format=image["mimeType"].split("/", 1)[-1])
            for image in result["images"]
        ]
        return [result["page"], *images]

    return run_tool("confluence_get_page_content", _do)


@mcp.tool()
def confluence_get_page_ancestors(page_id: str) -> list[dict[str, Any]]:
    """List the parent pages of a page, root first."""
    pid = _page_id(page_id)
    return run_tool("confluence_get_page_ancestors", lambda: confluence_client().get_page_ancestors(pid))


@mcp.tool()
def confluence_get_page_by_title(
    space_key: str, title: str, convert_to_markdown: bool = True, enable_heading_anchors: bool = False
) -> Optional[dict[str, Any]]:
    """Find a page by exact title in a space. Returns null when there is none."""
    key = required_arg("space_key", space_key)
    page_title = required_arg("title", title)
    return run_tool(
        "confluence_get_page_by_title",
        lambda: confluence_client().get_page_by_title(key, page_title, convert_to_markdown, enable_heading_anchors),
    )


@mcp.tool()
def confluence_get_space_pages(
    space_key: str,
    start: int = 0,
    limit: int = 25,
    convert_to_markdown: bool = True,
    enable_heading_anchors: bool = False,
) -> list[dict[str, Any]]:
    """List pages of a space."""
    key = required_arg("space_key", space_key)
    return run_tool(
        "confluence_get_space_pages",
        lambda: confluence_client().get_space_pages(
            key, max(0, int(start)), clamp(limit, MAX_PAGE_LIMIT), convert_to_markdown, enable_heading_anchors
        ),
    )


@mcp.tool()
def confluence_create_page(
    space_key: str, title: str, body: str, parent_id: Optional[str] = None, is_markdown: bool = False
) -> dict[str, Any]:
    """Create a page. body is storage format unless is_markdown is true."""
    try:
        page = CreatePageInput(space_key=space_key, title=title, body=body, parent_id=parent_id, is_markdown=is_markdown)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
    return run_tool("confluence_create_page", lambda: confluence_client().create_page(page))


@mcp.tool()
def confluence_update_page(
    page_id: str,
    title: str,
    body: str,
    is_markdown: bool = False,
    update_mode: str = "replace",
    version_comment: Optional[str] = None,
    is_minor_edit: Optional[bool] = None,
) -> dict[str, Any]:
    """Write a new version of a page.

    update_mode is replace (default), append or prepend. To edit part of a page,
    fetch it with convert_to_markdown=false and send the edited storage format
    with is_markdown=false.
    """
    try:
        update = UpdatePageInput(
            page_id=page_id,
            title=title,
            body=body,
            is_markdown=is_markdown,
            update_mode=(update_mode or "replace").strip().lower(),
            version_comment=version_comment,
            is_minor_edit=is_minor_edit,
        )
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
    return run_tool("confluence_update_page", lambda: confluence_client().update_page(update))


@mcp.tool()
def confluence_get_page_children(
    page_id: str,
    start: int = 0,
    limit: int = 25,
    convert_to_markdown: bool = True,
    enable_heading_anchors: bool = False,
) -> list[dict[str, Any]]:
    """List child pages of a page."""
    pid = _page_id(page_id)
    return run_tool(
        "confluence_get_page_children",
        lambda: confluence_client().get_page_children(
            pid,
            max(0, int(start)),
            clamp(limit, MAX_PAGE_LIMIT),
            convert_to_markdown=convert_to_markdown,
            enable_heading_anchors=enable_heading_anchors,
        ),
    )


@mcp.tool()
def confluence_search(
    cql: str, start: int = 0, limit: int = 25, spaces_filter: Optional[str] = None
) -> list[dict[str, Any]]:
    """Search content with CQL. spaces_filter is a comma-separated list of space keys."""
    query = required_arg("cql", cql)
    return run_tool(
        "confluence_search",
        lambda: confluence_client().search(query, max(0, int(start)), clamp(limit, MAX_PAGE_LIMIT), spaces_filter),
    )


@mcp.tool()
def confluence_search_user(query: str, limit: int = 10) -> list[dict[str, Any]]:
    """Find users by username."""
    needle = required_arg("query", query)
    return run_tool("confluence_search_user", lambda: confluence_client().search_user(needle, clamp(limit, 50)))


@mcp.tool()
def confluence_get_page_comments(page_id: str, return_markdown: bool = True) -> list[dict[str, Any]]:
    """List comments on a page."""
    pid = _page_id(page_id)
    return run_tool("confluence_get_page_comments", lambda: confluence_client().get_page_comments(pid, return_markdown))


@mcp.tool()
def confluence_add_comment(page_id: str, content: str, is_markdown: bool = False) -> dict[str, Any]:
    """Add a comment to a page. content is storage format unless is_markdown is true."""
    pid = _page_id(page_id)
    body = required_arg("content", content)
    return run_tool("confluence_add_comment", lambda: confluence_client().add_comment(pid, body, is_markdown))


@mcp.tool()
def confluence_get_page_labels(page_id: str) -> list[dict[str, Any]]:
    """List labels of a page."""
    pid = _page_id(page_id)
    return run_tool("confluence_get_page_labels", lambda: confluence_client().get_page_labels(pid))


@mcp.tool()
def confluence_add_page_label(page_id: str, label_name: str) -> list[dict[str, Any]]:
    """Add a global label to a page and return the updated labels."""
    pid = _page_id(page_id)
    label = required_arg("label_name", label_name)
    return run_tool("confluence_add_page_label", lambda: confluence_client().add_page_label(pid, label))


@mcp.tool()
def confluence_get_spaces(start: int = 0, limit: int = 25) -> list[dict[str, Any]]:
    """List spaces."""
    return run_tool(
        "confluence_get_spaces",
        lambda: confluence_client().get_spaces(max(0, int(start)), clamp(limit, MAX_PAGE_LIMIT)),
    )


@mcp.tool()
def confluence_get_user_contributed_spaces(limit: int = 250) -> list[dict[str, str]]:
    """List spaces the current user has contributed to."""
    return run_tool(
        "confluence_get_user_contributed_spaces",
        lambda: confluence_client().get_user_contributed_spaces(clamp(limit, 1000)),
    )


@mcp.tool()
def confluence_get_user_details_by_username(username: str, expand: Optional[str] = None) -> dict[str, Any]:
    """Get a user's profile."""
    name = required_arg("username", username)
    return run_tool("confluence_get_user_details_by_username", lambda: confluence_client().get_user_details(name, expand))


@mcp.tool()
def confluence_get_current_user_info() -> dict[str, Any]:
    """Get the profile of the user the token belongs to."""
    return run_tool("confluence_get_current_user_info", lambda: confluence_client().get_current_user())


@mcp.tool()
def confluence_get_page_attachments(page_id: str, start: int = 0, limit: int = 25) -> list[dict[str, Any]]:
    """List attachments of a page."""
    pid = _page_id(page_id)
    return run_tool(
        "confluence_get_page_attachments",
        lambda: confluence_client().get_page_attachments(pid, max(0, int(start)), clamp(limit, MAX_PAGE_LIMIT)),
    )


@mcp.tool()
def confluence_attach_file(page_id: str, file_path: str, comment: Optional[str] = None) -> dict[str, Any]:
    """Upload a local file as a page attachment."""
    pid = _page_id(page_id)
    path = required_arg("file_path", file_path)
    return run_tool("confluence_attach_file", lambda: confluence_client().attach_file(pid, path, comment))


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
