from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.parse import quote

from shared.content_transcoder import ContentTranscoder
from shared.http_client import HttpClient, UpstreamError
from shared.logging import get_logger
from shared.schema import CreatePageInput, UpdatePageInput

API = "/rest/api"
MAX_CONTENT_LENGTH = 10_000_000
IMAGE_ATTACHMENT_SCAN_LIMIT = 10

MARKDOWN_UPDATE_HINT = (
    "IMPORTANT: This content is in Markdown format (converted from HTML for readability). "
    "To update this page, you MUST re-fetch with convert_to_markdown=false to get the storage format, "
    "then use is_markdown=false in update_page. Do NOT use is_markdown=true with this Markdown content."
)

BAD_REQUEST_HINT = (
    "Common causes:\n"
    "1. is_markdown=true but content is HTML: set is_markdown=false\n"
    "2. Content contains escaped characters: send raw HTML instead\n"
    "3. Incomplete page content: use update_mode='append' or 'prepend'\n"
    "4. Invalid HTML structure: verify the markup\n\n"
    "To add content to an existing page, set update_mode='append' or 'prepend'; "
    "update_mode='replace' (default) replaces the entire body."
)

logger = get_logger(__name__, platform="confluence")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _storage_value(content: dict[str, Any], *representations: str) -> str:
    body = content.get("body") or {}
    for representation in representations:
        value = (body.get(representation) or {}).get("value")
        if value:
            return value
    return ""


def _history_user(content: dict[str, Any]) -> dict[str, str]:
    created_by = (content.get("history") or {}).get("createdBy") or {}
    return {
        "username": created_by.get("username") or created_by.get("name") or "",
        "displayName": created_by.get("displayName") or "Unknown",
    }


def validate_final_content(content: str) -> Optional[str]:
    """Return the reason ``content`` cannot be sent as a page body, or ``None``."""
    if not content or not content.strip():
        return "Content is empty or whitespace only."
    if len(content) > MAX_CONTENT_LENGTH:
        return "Content exceeds maximum size limit (10MB)."
    return None


@contextmanager
def _failure(message: str) -> Iterator[None]:
    try:
        yield
    except UpstreamError as exc:
        raise RuntimeError(f"{message}: {exc}") from exc


class ConfluenceClient:
    """Confluence Server / Data Center REST client.

    Page bodies are exchanged in storage format. Reads can convert them to
    Markdown and writes can accept Markdown, both through
    :class:`ContentTranscoder`.
    """

    def __init__(self, http: HttpClient, transcoder: Optional[ContentTranscoder] = None) -> None:
        self._http = http
        self._transcoder = transcoder or ContentTranscoder()

    @staticmethod
    def _id(value: Any) -> str:
        return quote(str(value), safe="")

    def _page_url(self, page_id: Any) -> str:
        return f"{self._http.base_url}/pages/?pageId={page_id}"

    def _page_summary(self, page: dict[str, Any], space_key: str = "", space_name: str = "") -> dict[str, Any]:
        space = page.get("space") or {}
        version = page.get("version") or {}
        key = space.get("key") or space_key
        return {
            "id": page.get("id"),
            "title": page.get("title"),
            "type": page.get("type") or "page",
            "status": page.get("status") or "current",
            "space": {"key": key, "name": space.get("name") or space_name or key},
            "version": {"number": version.get("number") or 1, "when": version.get("when") or _now()},
            "url": self._page_url(page.get("id")),
        }

    def _with_content(
        self,
        summary: dict[str, Any],
        content: str,
        convert_to_markdown: bool,
        enable_heading_anchors: bool,
    ) -> dict[str, Any]:
        if convert_to_markdown and content:
            summary["content"] = self._transcoder.process_page_content(
                content, True, self._http.base_url, enable_heading_anchors
            )
            summary["contentFormat"] = "markdown"
            summary["_mcpUpdateHint"] = MARKDOWN_UPDATE_HINT
        else:
            summary["content"] = content
            summary["contentFormat"] = "storage"
        return summary

    # -- pages -------------------------------------------------------------------

    def get_page_content(
        self,
        page_id: str,
        convert_to_markdown: bool = False,
        enable_heading_anchors: bool = False,
    ) -> dict[str, Any]:
        """Fetch a page body plus any image attachments the body references.

        Images come back as raw thumbnail bytes with their media type so the tool
        layer can hand them to the model as image content.
        """
        with _failure(f"Failed to get page {page_id}"):
            response = self._http.get(
                f"{API}/content/{self._id(page_id)}",
                params={"expand": "body.storage,body.export_view,version,space,children.attachment"},
            )

        body = _storage_value(response, "export_view", "storage")
        page = self._with_content(self._page_summary(response), body, convert_to_markdown, enable_heading_anchors)
        return {"page": page, "images": self._page_images(page_id, page["content"])}

    def _page_images(self, page_id: str, body: str) -> list[dict[str, Any]]:
        try:
            response = self._http.get(
                f"{API}/content/{self._id(page_id)}/child/attachment",
                params={"limit": IMAGE_ATTACHMENT_SCAN_LIMIT},
            )
        except UpstreamError as exc:
            logger.warning("Failed to list attachments for image extraction", extra={"status_code": exc.status_code})
            return []

        images: list[dict[str, Any]] = []
        for attachment in response.get("results") or []:
            media_type = (attachment.get("extensions") or {}).get("mediaType") or ""
            file_name = quote(attachment.get("title") or "", safe="")
            thumbnail = (attachment.get("_links") or {}).get("thumbnail")
            if not media_type.startswith("image/") or not file_name or not thumbnail or file_name not in body:
                continue
            try:
                data = self._http.get_bytes(thumbnail)
            except UpstreamError as exc:
                logger.warning(
                    "Failed to fetch image",
                    extra={"status_code": exc.status_code, "extra": {"file_name": file_name}},
                )
                continue
            images.append({"type": "image", "data": data, "mimeType": media_type})
        return images

    def get_page_ancestors(self, page_id: str) -> list[dict[str, Any]]:
        with _failure("Failed to get page ancestors"):
            response = self._http.get(f"{API}/content/{self._id(page_id)}", params={"expand": "ancestors,space"})

        space = response.get("space") or {}
        return [
            self._page_summary(ancestor, space.get("key") or "", space.get("name") or "")
            for ancestor in response.get("ancestors") or []
        ]

    def get_page_by_title(
        self,
        space_key: str,
        title: str,
        convert_to_markdown: bool = False,
        enable_heading_anchors: bool = False,
    ) -> Optional[dict[str, Any]]:
        try:
            response = self._http.get(
                f"{API}/content",
                params={"spaceKey": space_key, "title": title, "expand": "body.storage,body.export_view,version,space"},
            )
        except UpstreamError as exc:
            logger.info("Page lookup by title failed", extra={"status_code": exc.status_code})
            return None

        results = response.get("results") or []
        if not results:
            return None
        page = results[0]
        return self._with_content(
            self._page_summary(page, space_key),
            _storage_value(page, "export_view", "storage"),
            convert_to_markdown,
            enable_heading_anchors,
        )

    def get_space_pages(
        self,
        space_key: str,
        start: int = 0,
        limit: int = 25,
        convert_to_markdown: bool = False,
        enable_heading_anchors: bool = False,
    ) -> list[dict[str, Any]]:
        with _failure("Failed to get space pages"):
            response = self._http.get(
                f"{API}/content",
                params={
                    "spaceKey": space_key,
                    "type": "page",
                    "start": start,
                    "limit": limit,
                    "expand": "body.storage,version,space",
                },
            )

        return [
            self._with_content(
                self._page_summary(page, space_key),
                _storage_value(page, "storage"),
                convert_to_markdown,
                enable_heading_anchors,
            )
            for page in response.get("results") or []
        ]

    def get_page_children(
        self,
        page_id: str,
        start: int = 0,
        limit: int = 25,
        expand: str = "version",
        convert_to_markdown: bool = False,
        enable_heading_anchors: bool = False,
    ) -> list[dict[str, Any]]:
        with _failure("Failed to get page children"):
            response = self._http.get(
                f"{API}/content/{self._id(page_id)}/child/page",
                params={"start": start, "limit": limit, "expand": f"{expand},space,body.storage"},
            )

        return [
            self._with_content(
                self._page_summary(page),
                _storage_value(page, "storage"),
                convert_to_markdown,
                enable_heading_anchors,
            )
            for page in response.get("results") or []
        ]

    def create_page(self, page: CreatePageInput) -> dict[str, Any]:
        body = self._transcoder.process_input_content(page.body, is_markdown=page.is_markdown)
        data: dict[str, Any] = {
            "type": "page",
            "title": page.title,
            "space": {"key": page.space_key},
            "body": {"storage": {"value": body, "representation": "storage"}},
        }
        if page.parent_id:
            data["ancestors"] = [{"id": page.parent_id}]

        with _failure("Failed to create page"):
            response = self._http.post(f"{API}/content", data)
        return self._page_summary(response, page.space_key)

    def update_page(self, update: UpdatePageInput) -> dict[str, Any]:
        """Write a new page version.

        ``append`` and ``prepend`` fetch the current storage body and join the
        new content to it. A 400 from Confluence is re-raised with the usual
        causes spelled out.
        """
        if update.is_markdown:
            validation = self._transcoder.validate_markdown_input(update.body)
            if not validation.is_valid:
                logger.warning(
                    "Content format warning, set is_markdown=false if content is HTML",
                    extra={"extra": {"reason": validation.message}},
                )

        needs_existing = update.update_mode in ("append", "prepend")
        expand = "version,body.storage" if needs_existing else "version"
        try:
            current = self._http.get(f"{API}/content/{self._id(update.page_id)}", params={"expand": expand})
            version = (current.get("version") or {}).get("number")
            if version is None:
                raise RuntimeError("Failed to update page: could not retrieve current version number")

            new_content = self._transcoder.process_input_content(update.body, is_markdown=update.is_markdown)
            final_content = new_content
            if needs_existing:
                existing = _storage_value(current, "storage")
                if update.update_mode == "append":
                    final_content = f"{existing}\n{new_content}"
                else:
                    final_content = f"{new_content}\n{existing}"

            problem = validate_final_content(final_content)
            if problem:
                raise RuntimeError(
                    f"Content validation failed: {problem}\nThis may cause a 400 error from Confluence API."
                )

            data: dict[str, Any] = {
                "id": update.page_id,
                "type": "page",
                "title": update.title,
                "version": {"number": version + 1},
                "body": {"storage": {"value": final_content, "representation": "storage"}},
            }
            if update.version_comment:
                data["version"]["message"] = update.version_comment
            if update.is_minor_edit is not None:
                data["version"]["minorEdit"] = update.is_minor_edit

            response = self._http.put(f"{API}/content/{self._id(update.page_id)}", data)
        except UpstreamError as exc:
            if exc.status_code == 400:
                raise RuntimeError(f"Failed to update page: {exc}\n\n{BAD_REQUEST_HINT}") from exc
            raise RuntimeError(f"Failed to update page: {exc}") from exc

        summary = self._page_summary(response)
        if not (response.get("version") or {}).get("number"):
            summary["version"]["number"] = version + 1
        return summary

    def delete_page(self, page_id: str) -> bool:
        with _failure("Failed to delete page"):
            self._http.delete(f"{API}/content/{self._id(page_id)}")
        return True

    # -- search ------------------------------------------------------------------

    def search(self, cql: str, start: int = 0, limit: int = 25, spaces_filter: Optional[str] = None) -> list[dict[str, Any]]:
        full_cql = cql
        if spaces_filter:
            spaces = [s.strip() for s in spaces_filter.split(",") if s.strip()]
            if spaces:
                full_cql = f"({cql}) AND (" + " OR ".join(f'space = "{s}"' for s in spaces) + ")"

        with _failure("Failed to search"):
            response = self._http.get(
                f"{API}/content/search",
                params={"cql": full_cql, "limit": limit, "start": start, "expand": "space"},
            )

        results = []
        for result in response.get("results") or []:
            content = result.get("content") or {}
            content_id = content.get("id") or result.get("id")
            container = result.get("resultGlobalContainer") or {}
            content_space = content.get("space") or {}
            space: Optional[dict[str, Any]] = None
            if container.get("title"):
                space = {"key": container["title"], "name": container["title"]}
            elif content_space:
                space = {"key": content_space.get("key"), "name": content_space.get("name") or content_space.get("key")}
            results.append(
                {
                    "id": content_id,
                    "title": content.get("title") or result.get("title"),
                    "type": content.get("type") or result.get("type") or "page",
                    "excerpt": result.get("excerpt") or "",
                    "url": result.get("url") or self._page_url(content_id),
                    "space": space,
                }
            )
        return results

    def search_user(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        """Find users by exact username, then by scanning content creators and editors."""
        try:
            direct = self._http.get(f"{API}/user", params={"username": query})
        except UpstreamError:
            direct = None
        if isinstance(direct, dict) and direct.get("username"):
            return [direct]

        cql = f'contributor ~ "{query}" OR creator ~ "{query}"'
        try:
            response = self._http.get(f"{API}/content/search", params={"cql": cql, "limit": min(limit * 5, 100)})
        except UpstreamError as exc:
            logger.info("Contributor search failed", extra={"status_code": exc.status_code})
            return []

        needle = query.lower()
        users: dict[str, dict[str, Any]] = {}
        for result in response.get("results") or []:
            candidates = (
                (result.get("history") or {}).get("createdBy"),
                (result.get("version") or {}).get("by"),
            )
            for person in candidates:
                if not person:
                    continue
                username = person.get("username") or person.get("name")
                if username and needle in username.lower() and username not in users:
                    users[username] = {
                        "username": username,
                        "displayName": person.get("displayName") or username,
                        "userKey": person.get("userKey"),
                    }
        return list(users.values())[:limit]

    # -- comments and labels -----------------------------------------------------

    def get_page_comments(self, page_id: str, return_markdown: bool = True) -> list[dict[str, Any]]:
        with _failure("Failed to get page comments"):
            response = self._http.get(
                f"{API}/content/{self._id(page_id)}/child/comment",
                params={"expand": "body.view.value,body.storage.value,version,history.createdBy", "depth": "all"},
            )

        comments = []
        for comment in response.get("results") or []:
            body = _storage_value(comment, "view", "storage")
            if return_markdown and body:
                body = self._transcoder.to_markdown(body, self._http.base_url)
            comments.append(
                {
                    "id": comment.get("id"),
                    "title": comment.get("title") or "",
                    "body": body,
                    "created": (comment.get("history") or {}).get("createdDate") or _now(),
                    "createdBy": _history_user(comment),
                    "version": {"number": (comment.get("version") or {}).get("number") or 1},
                }
            )
        return comments

    def add_comment(self, page_id: str, content: str, is_markdown: bool = False) -> dict[str, Any]:
        body = self._transcoder.to_storage(content) if is_markdown else content
        data = {
            "type": "comment",
            "container": {"id": page_id, "type": "page"},
            "body": {"storage": {"value": body, "representation": "storage"}},
        }

        with _failure("Failed to add comment"):
            response = self._http.post(f"{API}/content", data)

        return {
            "id": response.get("id"),
            "title": response.get("title") or "",
            "body": _storage_value(response, "storage") or body,
            "created": (response.get("history") or {}).get("createdDate") or _now(),
            "createdBy": _history_user(response),
            "version": {"number": (response.get("version") or {}).get("number") or 1},
        }

    def get_page_labels(self, page_id: str) -> list[dict[str, Any]]:
        with _failure("Failed to get page labels"):
            response = self._http.get(f"{API}/content/{self._id(page_id)}/label")
        return [
            {"id": label.get("id"), "name": label.get("name"), "prefix": label.get("prefix") or "global"}
            for label in response.get("results") or []
        ]

    def add_page_label(self, page_id: str, label_name: str) -> list[dict[str, Any]]:
        with _failure("Failed to add page label"):
            self._http.post(f"{API}/content/{self._id(page_id)}/label", [{"prefix": "global", "name": label_name}])
        return self.get_page_labels(page_id)

    # -- spaces and users --------------------------------------------------------

    def get_spaces(self, start: int = 0, limit: int = 25) -> list[dict[str, Any]]:
        with _failure("Failed to get spaces"):
            response = self._http.get(
                f"{API}/space",
                params={"start": start, "limit": limit, "expand": "description.plain,homepage"},
            )

        spaces = []
        for space in response.get("results") or []:
            homepage = space.get("homepage")
            spaces.append(
                {
                    "key": space.get("key"),
                    "name": space.get("name"),
                    "type": space.get("type") or "global",
                    "status": space.get("status") or "current",
                    "description": ((space.get("description") or {}).get("plain") or {}).get("value"),
                    "homepage": {"id": homepage.get("id")} if homepage else None,
                }
            )
        return spaces

    def get_user_contributed_spaces(self, limit: int = 250) -> list[dict[str, str]]:
        with _failure("Failed to get user contributed spaces"):
            response = self._http.get(
                f"{API}/content/search",
                params={"cql": "contributor = currentUser() order by lastmodified DESC", "limit": limit},
            )

        spaces: dict[str, dict[str, str]] = {}
        for result in response.get("results") or []:
            space_key: Optional[str] = None
            space_name: Optional[str] = None

            container = result.get("resultGlobalContainer") or {}
            if container:
                space_name = container.get("title")
                display_url = container.get("displayUrl") or ""
                if "/spaces/" in display_url:
                    space_key = display_url.split("/spaces/", 1)[1].split("/", 1)[0]

            if not space_key:
                space_path = ((result.get("content") or {}).get("_expandable") or {}).get("space") or ""
                if space_path.startswith(f"{API}/space/"):
                    space_key = space_path[len(f"{API}/space/"):]

            if space_key and space_key not in spaces:
                spaces[space_key] = {"key": space_key, "name": space_name or f"Space {space_key}"}
        return list(spaces.values())

    def get_user_details(self, username: str, expand: Optional[str] = None) -> dict[str, Any]:
        params = {"username": username}
        if expand:
            params["expand"] = expand
        with _failure("Failed to get user details"):
            return self._http.get(f"{API}/user", params=params)

    def get_current_user(self) -> dict[str, Any]:
        with _failure("Failed to get current user info"):
            return self._http.get(f"{API}/user/current")

    # -- attachments -------------------------------------------------------------

    def get_page_attachments(self, page_id: str, start: int = 0, limit: int = 25) -> list[dict[str, Any]]:
        with _failure("Failed to get page attachments"):
            response = self._http.get(
                f"{API}/content/{self._id(page_id)}/child/attachment",
                params={"start": start, "limit": limit},
            )
        return response.get("results") or []

    def attach_file(self, page_id: str, file_path: str, comment: Optional[str] = None) -> dict[str, Any]:
        path = Path(file_path)
        if not path.is_file():
            raise RuntimeError(f"Failed to attach file: File not found: {file_path}")

        fields = {"comment": comment} if comment else None
        with _failure("Failed to attach file"):
            response = self._http.post_multipart(
                f"{API}/content/{self._id(page_id)}/child/attachment",
                file_name=path.name,
                content=path.read_bytes(),
                fields=fields,
            )

        results = (response or {}).get("results") or []
        return results[0] if results else response

    def delete_attachment(self, attachment_id: str) -> bool:
        with _failure("Failed to delete attachment"):
            self._http.delete(f"{API}/content/{self._id(attachment_id)}")
        return True
