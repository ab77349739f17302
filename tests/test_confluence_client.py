from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import pytest

from shared.confluence_client import BAD_REQUEST_HINT, MARKDOWN_UPDATE_HINT, ConfluenceClient, validate_final_content
from shared.http_client import HttpClient
from shared.retry import RetryConfig
from shared.schema import CreatePageInput, UpdatePageInput

BASE = "https://wiki.example.com"


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, raw: Optional[bytes] = None):
        self.status_code = status_code
        self._payload = payload
        self.reason = "Error" if status_code >= 400 else "OK"
        if raw is not None:
            self.content = raw
            self.text = ""
        else:
            self.text = json.dumps(payload) if payload is not None else ""
            self.content = self.text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, routes: dict[tuple[str, str], Any]):
        self.routes = routes
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, headers=None, timeout=None, **kwargs):
        path = url[len(BASE):]
        self.calls.append({"method": method, "path": path, **kwargs})
        response = self.routes.get((method, path))
        if response is None:
            return FakeResponse(404, {"message": f"No route for {method} {path}"})
        if isinstance(response, list):
            return response.pop(0)
        return response


def _client(routes: dict[tuple[str, str], Any]) -> tuple[ConfluenceClient, FakeSession]:
    session = FakeSession(routes)
    http = HttpClient(BASE, "tok", session=session, retry_config=RetryConfig(max_attempts=1))
    return ConfluenceClient(http), session


def _page(page_id: str = "123", body: str = "<h1>Title</h1><p>Hello</p>", version: int = 4) -> dict[str, Any]:
    return {
        "id": page_id,
        "type": "page",
        "status": "current",
        "title": "Runbook",
        "space": {"key": "OPS", "name": "Operations"},
        "version": {"number": version, "when": "2024-05-01T10:00:00Z"},
        "body": {"storage": {"value": body}},
    }


def test_validate_final_content() -> None:
    assert validate_final_content("<p>x</p>") is None
    assert validate_final_content("  \n") == "Content is empty or whitespace only."
    assert "10MB" in validate_final_content("x" * 10_000_001)


def test_get_page_content_storage_format() -> None:
    client, session = _client(
        {
            ("GET", "/rest/api/content/123"): FakeResponse(200, _page()),
            ("GET", "/rest/api/content/123/child/attachment"): FakeResponse(200, {"results": []}),
        }
    )

    result = client.get_page_content("123")

    page = result["page"]
    assert page["content"] == "<h1>Title</h1><p>Hello</p>"
    assert page["contentFormat"] == "storage"
    assert page["space"] == {"key": "OPS", "name": "Operations"}
    assert page["version"] == {"number": 4, "when": "2024-05-01T10:00:00Z"}
    assert page["url"] == "https://wiki.example.com/pages/?pageId=123"
    assert "_mcpUpdateHint" not in page
    assert result["images"] == []


def test_get_page_content_as_markdown_carries_update_hint() -> None:
    client, _ = _client(
        {
            ("GET", "/rest/api/content/123"): FakeResponse(200, _page()),
            ("GET", "/rest/api/content/123/child/attachment"): FakeResponse(200, {"results": []}),
        }
    )

    page = client.get_page_content("123", convert_to_markdown=True, enable_heading_anchors=True)["page"]

    assert page["contentFormat"] == "markdown"
    assert page["content"].startswith("# Title {#title}")
    assert "Hello" in page["content"]
    assert page["_mcpUpdateHint"] == MARKDOWN_UPDATE_HINT


def test_referenced_images_are_returned_as_bytes() -> None:
    body = '<p><ac:image><ri:attachment ri:filename="diagram.png" /></ac:image></p>'
    attachments = {
        "results": [
            {"title": "diagram.png", "extensions": {"mediaType": "image/png"}, "_links": {"thumbnail": "/thumb/diagram.png"}},
            {"title": "unused.png", "extensions": {"mediaType": "image/png"}, "_links": {"thumbnail": "/thumb/unused.png"}},
            {"title": "notes.pdf", "extensions": {"mediaType": "application/pdf"}, "_links": {"thumbnail": "/thumb/notes"}},
        ]
    }
    client, session = _client(
        {
            ("GET", "/rest/api/content/123"): FakeResponse(200, _page(body=body)),
            ("GET", "/rest/api/content/123/child/attachment"): FakeResponse(200, attachments),
            ("GET", "/thumb/diagram.png"): FakeResponse(200, raw=b"\x89PNG"),
        }
    )

    images = client.get_page_content("123")["images"]

    assert images == [{"type": "image", "data": b"\x89PNG", "mimeType": "image/png"}]
    assert [c["path"] for c in session.calls].count("/thumb/unused.png") == 0


def test_image_failures_do_not_fail_the_page() -> None:
    client, _ = _client({("GET", "/rest/api/content/123"): FakeResponse(200, _page())})
    assert client.get_page_content("123")["images"] == []


def test_get_page_by_title_misses_return_none() -> None:
    client, _ = _client(
        {
            ("GET", "/rest/api/content"): [
                FakeResponse(200, {"results": []}),
                FakeResponse(500, {"message": "boom"}),
                FakeResponse(200, {"results": [_page()]}),
            ]
        }
    )

    assert client.get_page_by_title("OPS", "Missing") is None
    assert client.get_page_by_title("OPS", "Broken") is None
    found = client.get_page_by_title("OPS", "Runbook")
    assert found["id"] == "123"
    assert found["content"] == "<h1>Title</h1><p>Hello</p>"


def test_page_failure_is_runtime_error() -> None:
    client, _ = _client({})
    with pytest.raises(RuntimeError, match="Failed to get page 9"):
        client.get_page_content("9")


def test_create_page_converts_markdown_and_sets_parent() -> None:
    created = {"id": "200", "title": "New", "version": {"number": 1}}
    client, session = _client({("POST", "/rest/api/content"): FakeResponse(200, created)})

    result = client.create_page(
        CreatePageInput(space_key="OPS", title="New", body="**bold**", parent_id="100", is_markdown=True)
    )

    payload = session.calls[0]["json"]
    assert payload["body"]["storage"] == {"value": "<p><strong>bold</strong></p>", "representation": "storage"}
    assert payload["ancestors"] == [{"id": "100"}]
    assert payload["space"] == {"key": "OPS"}
    assert result["space"]["key"] == "OPS"
    assert result["version"]["number"] == 1


def test_create_page_keeps_html_flagged_as_markdown() -> None:
    client, session = _client({("POST", "/rest/api/content"): FakeResponse(200, {"id": "201"})})
    client.create_page(CreatePageInput(space_key="OPS", title="New", body="<p>raw</p>", is_markdown=True))
    assert session.calls[0]["json"]["body"]["storage"]["value"] == "<p>raw</p>"


def test_update_page_appends_to_existing_body() -> None:
    client, session = _client(
        {
            ("GET", "/rest/api/content/123"): FakeResponse(200, _page(body="<p>old</p>")),
            ("PUT", "/rest/api/content/123"): FakeResponse(200, {"id": "123", "title": "Runbook", "version": {"number": 5}}),
        }
    )

    result = client.update_page(
        UpdatePageInput(page_id="123", title="Runbook", body="<p>new</p>", update_mode="append", version_comment="add step")
    )

    assert session.calls[0]["params"] == {"expand": "version,body.storage"}
    payload = session.calls[1]["json"]
    assert payload["body"]["storage"]["value"] == "<p>old</p>\n<p>new</p>"
    assert payload["version"] == {"number": 5, "message": "add step"}
    assert result["version"]["number"] == 5


def test_update_page_prepend_and_minor_edit() -> None:
    client, session = _client(
        {
            ("GET", "/rest/api/content/123"): FakeResponse(200, _page(body="<p>old</p>")),
            ("PUT", "/rest/api/content/123"): FakeResponse(200, {"id": "123"}),
        }
    )

    result = client.update_page(
        UpdatePageInput(page_id="123", title="Runbook", body="<p>top</p>", update_mode="prepend", is_minor_edit=True)
    )

    payload = session.calls[1]["json"]
    assert payload["body"]["storage"]["value"] == "<p>top</p>\n<p>old</p>"
    assert payload["version"] == {"number": 5, "minorEdit": True}
    assert result["version"]["number"] == 5


def test_update_page_bad_request_explains_causes() -> None:
    client, _ = _client(
        {
            ("GET", "/rest/api/content/123"): FakeResponse(200, _page()),
            ("PUT", "/rest/api/content/123"): FakeResponse(400, {"message": "Error parsing xhtml"}),
        }
    )

    with pytest.raises(RuntimeError) as excinfo:
        client.update_page(UpdatePageInput(page_id="123", title="Runbook", body="<p>broken"))

    assert "Error parsing xhtml" in str(excinfo.value)
    assert BAD_REQUEST_HINT in str(excinfo.value)


def test_update_page_rejects_empty_body_before_writing() -> None:
    client, session = _client({("GET", "/rest/api/content/123"): FakeResponse(200, _page())})

    with pytest.raises(RuntimeError, match="Content validation failed"):
        client.update_page(UpdatePageInput(page_id="123", title="Runbook", body="  "))
    assert [c["method"] for c in session.calls] == ["GET"]


def test_search_applies_spaces_filter() -> None:
    response = {
        "results": [
            {
                "content": {"id": "1", "title": "Deploy", "type": "page"},
                "excerpt": "how to deploy",
                "resultGlobalContainer": {"title": "OPS"},
            }
        ]
    }
    client, session = _client({("GET", "/rest/api/content/search"): FakeResponse(200, response)})

    results = client.search("text ~ deploy", spaces_filter="OPS, DEV")

    assert session.calls[0]["params"]["cql"] == '(text ~ deploy) AND (space = "OPS" OR space = "DEV")'
    assert results == [
        {
            "id": "1",
            "title": "Deploy",
            "type": "page",
            "excerpt": "how to deploy",
            "url": "https://wiki.example.com/pages/?pageId=1",
            "space": {"key": "OPS", "name": "OPS"},
        }
    ]


def test_search_user_direct_hit() -> None:
    client, _ = _client({("GET", "/rest/api/user"): FakeResponse(200, {"username": "alice", "displayName": "Alice"})})
    assert client.search_user("alice") == [{"username": "alice", "displayName": "Alice"}]


def test_search_user_scans_contributors() -> None:
    response = {
        "results": [
            {"history": {"createdBy": {"username": "alice.smith", "displayName": "Alice"}}, "version": {"by": {"username": "bob"}}},
            {"history": {"createdBy": {"username": "alice.smith", "displayName": "Alice"}}},
            {"version": {"by": {"username": "malice", "userKey": "k1"}}},
        ]
    }
    client, _ = _client({("GET", "/rest/api/content/search"): FakeResponse(200, response)})

    assert client.search_user("alice") == [
        {"username": "alice.smith", "displayName": "Alice", "userKey": None},
        {"username": "malice", "displayName": "malice", "userKey": "k1"},
    ]


def test_page_comments_are_converted_to_markdown() -> None:
    response = {
        "results": [
            {
                "id": "c1",
                "body": {"view": {"value": "<p><strong>LGTM</strong></p>"}},
                "history": {"createdDate": "2024-01-01", "createdBy": {"username": "bob", "displayName": "Bob"}},
                "version": {"number": 2},
            }
        ]
    }
    client, _ = _client({("GET", "/rest/api/content/123/child/comment"): FakeResponse(200, response)})

    comments = client.get_page_comments("123")

    assert comments == [
        {
            "id": "c1",
            "title": "",
            "body": "**LGTM**",
            "created": "2024-01-01",
            "createdBy": {"username": "bob", "displayName": "Bob"},
            "version": {"number": 2},
        }
    ]


def test_add_label_then_lists_labels() -> None:
    client, session = _client(
        {
            ("POST", "/rest/api/content/123/label"): FakeResponse(200, {"results": []}),
            ("GET", "/rest/api/content/123/label"): FakeResponse(200, {"results": [{"id": "9", "name": "ops"}]}),
        }
    )

    assert client.add_page_label("123", "ops") == [{"id": "9", "name": "ops", "prefix": "global"}]
    assert session.calls[0]["json"] == [{"prefix": "global", "name": "ops"}]


def test_contributed_spaces_from_container_and_expandable() -> None:
    response = {
        "results": [
            {"resultGlobalContainer": {"title": "Operations", "displayUrl": "/spaces/OPS/overview"}},
            {"content": {"_expandable": {"space": "/rest/api/space/DEV"}}},
            {"resultGlobalContainer": {"title": "Operations", "displayUrl": "/spaces/OPS"}},
        ]
    }
    client, _ = _client({("GET", "/rest/api/content/search"): FakeResponse(200, response)})

    assert client.get_user_contributed_spaces() == [
        {"key": "OPS", "name": "Operations"},
        {"key": "DEV", "name": "Space DEV"},
    ]


def test_attach_file_uploads_bytes(tmp_path: Path) -> None:
    upload = tmp_path / "report.txt"
    upload.write_bytes(b"numbers")
    client, session = _client(
        {("POST", "/rest/api/content/123/child/attachment"): FakeResponse(200, {"results": [{"id": "att9", "title": "report.txt"}]})}
    )

    result = client.attach_file("123", str(upload), comment="weekly")

    assert result == {"id": "att9", "title": "report.txt"}
    call = session.calls[0]
    assert call["files"] == {"file": ("report.txt", b"numbers")}
    assert call["data"] == {"comment": "weekly"}


def test_attach_missing_file(tmp_path: Path) -> None:
    client, session = _client({})
    with pytest.raises(RuntimeError, match="File not found"):
        client.attach_file("123", str(tmp_path / "nope.txt"))
    assert session.calls == []
