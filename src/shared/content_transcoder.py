"""Conversion between Confluence storage format and Markdown.

Storage format is Confluence's HTML dialect with ``ac:`` and ``ri:`` elements
for macros and resource references. Markdown goes out for readability and
comes back in for page edits, so both directions have to cope with callers
sending the wrong format or an over-escaped string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag
from markdown_it import MarkdownIt
from markdownify import ATX, MarkdownConverter

from shared.logging import get_logger

logger = get_logger(__name__)

MACRO_TAG = "ac:structured-macro"
MACRO_CLASS = "confluence-macro"

_WHITESPACE_RE = re.compile(r"\s+")
_HEADING_RE = re.compile(r"^#{1,6}\s+")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_HTML_TAG_RE = re.compile(r"</?[a-z][\s\S]*>", re.IGNORECASE)
# Two literal backslashes before n, " or ': the string was escaped one time too many.
_ESCAPED_SIGNATURE_RE = re.compile(r"\\\\(?:n|\"|')")
_STORAGE_FORMAT_RES = (
    re.compile(r"<ac:", re.IGNORECASE),
    re.compile(r"<ri:", re.IGNORECASE),
    re.compile(r"confluence-embedded-", re.IGNORECASE),
    re.compile(r"<structured-macro", re.IGNORECASE),
)
_UNESCAPES = (
    ("\\\\n", "\n"),
    ("\\\\r", "\r"),
    ("\\\\t", "\t"),
    ('\\\\"', '"'),
    ("\\\\'", "'"),
    ("\\\\\\\\", "\\"),
)


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    message: str


def _is_macro(el: Tag) -> bool:
    if el.name == MACRO_TAG:
        return True
    return el.name == "div" and MACRO_CLASS in (el.get("class") or [])


def _carries_content(p: Tag) -> bool:
    if p.get_text().strip():
        return True
    # Image-only paragraphs and macro-only paragraphs have no text but are not empty.
    return any(
        child.name == "img" or ":" in child.name or _is_macro(child)
        for child in p.find_all(True)
    )


def _code_language(code: Tag) -> str:
    for cls in code.get("class") or []:
        if cls.startswith("language-"):
            return cls[len("language-"):]
    return ""


def _cell_text(cell: Tag) -> str:
    return cell.get_text().strip()


class StorageMarkdownConverter(MarkdownConverter):
    """markdownify converter with Confluence macro, code block and table rules."""

    def _convert_macro(self, el: Tag, text: str) -> str:
        name = el.get("ac:name") or el.get("data-macro-name") or "unknown"
        body = text.strip()
        return f"\n\n<!-- Confluence Macro: {name} -->\n{body}\n\n" if body else f"\n\n<!-- Confluence Macro: {name} -->\n\n"

    def convert_ac_structured_macro(self, el, text, parent_tags):
        return self._convert_macro(el, text)

    def convert_div(self, el, text, parent_tags):
        if _is_macro(el):
            return self._convert_macro(el, text)
        if "_inline" in parent_tags:
            return " " + text.strip() + " "
        text = text.strip()
        return f"\n\n{text}\n\n" if text else ""

    def convert_pre(self, el, text, parent_tags):
        code = el.find("code")
        if code is None:
            return super().convert_pre(el, text, parent_tags)
        return f"\n\n```{_code_language(code)}\n{code.get_text()}\n```\n\n"

    def convert_table(self, el, text, parent_tags):
        rows = el.find_all("tr")
        if not rows:
            return ""

        lines: list[str] = []
        header_cells = rows[0].find_all(["th", "td"])
        if header_cells:
            lines.append("| " + " | ".join(_cell_text(c) for c in header_cells) + " |")
            lines.append("| " + " | ".join("---" for _ in header_cells) + " |")

        for row in rows[1 if header_cells else 0:]:
            cells = row.find_all(["td", "th"])
            if cells:
                lines.append("| " + " | ".join(_cell_text(c) for c in cells) + " |")

        return "\n\n" + "\n".join(lines) + "\n\n"


class ContentTranscoder:
    """Converts page bodies between storage format and Markdown.

    Both engines are built once and hold no per-call state.
    """

    def __init__(self) -> None:
        self._converter = StorageMarkdownConverter(
            heading_style=ATX,
            bullets="-",
            strong_em_symbol="*",
        )
        self._markdown = MarkdownIt("js-default", {"html": True, "linkify": True, "typographer": True})

    # -- storage format -> Markdown ---------------------------------------------

    @staticmethod
    def clean_html(html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")

        for el in soup(["script", "style"]):
            el.decompose()

        for p in soup.find_all("p"):
            if p.decomposed:
                continue
            if not _carries_content(p):
                p.decompose()

        return _WHITESPACE_RE.sub(" ", str(soup)).strip()

    @staticmethod
    def normalize_urls(soup: BeautifulSoup, base_url: str) -> BeautifulSoup:
        for tag_name, attr in (("img", "src"), ("a", "href")):
            for el in soup.find_all(tag_name):
                ref = el.get(attr)
                if not ref or ref.startswith("#") or urlsplit(ref).scheme:
                    continue
                el[attr] = urljoin(base_url, ref)
        return soup

    @staticmethod
    def heading_slug(heading: str) -> str:
        slug = _SLUG_STRIP_RE.sub("", heading.lower())
        return _WHITESPACE_RE.sub("-", slug)

    def add_heading_anchors(self, markdown: str) -> str:
        lines = []
        for line in markdown.split("\n"):
            if _HEADING_RE.match(line):
                heading = _HEADING_RE.sub("", line).strip()
                line = f"{line} {{#{self.heading_slug(heading)}}}"
            lines.append(line)
        return "\n".join(lines)

    def to_markdown(
        self,
        html: str,
        base_url: Optional[str] = None,
        enable_heading_anchors: bool = False,
    ) -> str:
        if not html:
            return ""

        soup = BeautifulSoup(self.clean_html(html), "html.parser")
        if base_url:
            self.normalize_urls(soup, base_url)

        markdown = self._converter.convert_soup(soup)
        if enable_heading_anchors:
            markdown = self.add_heading_anchors(markdown)
        return markdown.strip()

    # -- Markdown -> storage format ---------------------------------------------

    @staticmethod
    def is_escaped_string(text: str) -> bool:
        return bool(_ESCAPED_SIGNATURE_RE.search(text))

    @staticmethod
    def unescape_string(text: str) -> str:
        for escaped, literal in _UNESCAPES:
            text = text.replace(escaped, literal)
        return text

    def to_storage(self, markdown: str) -> str:
        if not markdown:
            return ""

        if self.is_escaped_string(markdown):
            logger.warning("Input appears to be an escaped string. Attempting to unescape.")
            markdown = self.unescape_string(markdown)

        return self._markdown.render(markdown).strip()

    # -- classification ---------------------------------------------------------

    @staticmethod
    def is_html_content(content: str) -> bool:
        return bool(_HTML_TAG_RE.search(content))

    @staticmethod
    def is_storage_format(content: str) -> bool:
        return any(pattern.search(content) for pattern in _STORAGE_FORMAT_RES)

    def validate_markdown_input(self, content: str) -> ValidationResult:
        if self.is_html_content(content):
            return ValidationResult(
                False,
                "Content appears to be HTML, not Markdown. Use is_markdown=false for HTML content.",
            )
        if self.is_escaped_string(content):
            return ValidationResult(
                False,
                "Content contains escaped characters. This may indicate it is already processed HTML.",
            )
        if self.is_storage_format(content):
            return ValidationResult(
                False,
                "Content appears to be Confluence Storage Format (HTML). Use is_markdown=false.",
            )
        return ValidationResult(True, "Content appears to be valid Markdown.")

    def process_input_content(self, content: str, is_markdown: bool = False) -> str:
        """Prepare a page or comment body for writing.

        Markdown that fails validation is passed through untouched with a
        warning rather than converted into something corrupt.
        """
        if not is_markdown:
            return content

        validation = self.validate_markdown_input(content)
        if not validation.is_valid:
            logger.warning(
                "Treating content as storage format instead of Markdown",
                extra={"extra": {"reason": validation.message}},
            )
            return content
        return self.to_storage(content)

    def process_page_content(
        self,
        content: str,
        convert_to_markdown: bool = False,
        base_url: Optional[str] = None,
        enable_heading_anchors: bool = False,
    ) -> str:
        if convert_to_markdown:
            return self.to_markdown(content, base_url, enable_heading_anchors)
        return content
