from __future__ import annotations

import logging

from bs4 import BeautifulSoup

from shared.content_transcoder import ContentTranscoder

transcoder = ContentTranscoder()


def test_plain_text_round_trip() -> None:
    storage = transcoder.to_storage("Hello world")
    assert storage == "<p>Hello world</p>"
    assert transcoder.to_markdown(storage) == "Hello world"


def test_heading_and_paragraph_round_trip() -> None:
    markdown = "# Title\n\nSome paragraph text."
    assert transcoder.to_markdown(transcoder.to_storage(markdown)) == markdown


def test_structured_macro_becomes_placeholder() -> None:
    html = '<p>Intro</p><ac:structured-macro ac:name="toc"></ac:structured-macro><p>Body</p>'
    markdown = transcoder.to_markdown(html)
    assert "<!-- Confluence Macro: toc -->" in markdown
    assert "Intro" in markdown
    assert "Body" in markdown


def test_macro_inside_paragraph_is_not_dropped() -> None:
    markdown = transcoder.to_markdown('<p><ac:structured-macro ac:name="toc"/></p>')
    assert "<!-- Confluence Macro: toc -->" in markdown


def test_div_macro_keeps_nested_content() -> None:
    html = '<div class="confluence-macro" data-macro-name="info"><p>Read this first</p></div>'
    assert transcoder.to_markdown(html) == "<!-- Confluence Macro: info -->\nRead this first"


def test_macro_without_name() -> None:
    assert transcoder.to_markdown('<div class="confluence-macro"></div>') == "<!-- Confluence Macro: unknown -->"


def test_heading_anchor_slug() -> None:
    markdown = transcoder.to_markdown("<h2>Hello, World! 123</h2>", enable_heading_anchors=True)
    assert markdown == "## Hello, World! 123 {#hello-world-123}"


def test_heading_slug_rules() -> None:
    assert transcoder.heading_slug("Hello, World! 123") == "hello-world-123"
    assert transcoder.heading_slug("Release notes - v2") == "release-notes---v2"


def test_code_block_keeps_language_and_raw_text() -> None:
    html = '<pre><code class="hljs language-python">print(1)</code></pre>'
    assert transcoder.to_markdown(html) == "```python\nprint(1)\n```"


def test_code_block_without_language() -> None:
    assert transcoder.to_markdown("<pre><code>x = 1</code></pre>") == "```\nx = 1\n```"


def test_table_first_row_is_header() -> None:
    html = "<table><tr><th>A</th><th>B</th></tr><tr><td>1</td><td>2</td></tr></table>"
    assert transcoder.to_markdown(html) == "| A | B |\n| --- | --- |\n| 1 | 2 |"


def test_table_without_rows_emits_nothing() -> None:
    assert transcoder.to_markdown("<table></table>") == ""


def test_clean_html_drops_scripts_styles_and_empty_paragraphs() -> None:
    html = "<style>p {}</style><p>   </p><p>Keep\n\n   me</p><script>alert(1)</script>"
    assert transcoder.clean_html(html) == "<p>Keep me</p>"


def test_clean_html_keeps_image_only_paragraph() -> None:
    assert "<img" in transcoder.clean_html('<p><img src="a.png"/></p>')


def test_normalize_urls_resolves_relative_references_only() -> None:
    soup = BeautifulSoup(
        '<a href="/pages/1">x</a><img src="img.png"/><a href="#top">t</a><a href="https://e.com/">e</a>',
        "html.parser",
    )
    transcoder.normalize_urls(soup, "https://wiki.example.com/confluence/")
    links = [a["href"] for a in soup.find_all("a")]
    assert links == ["https://wiki.example.com/pages/1", "#top", "https://e.com/"]
    assert soup.find("img")["src"] == "https://wiki.example.com/confluence/img.png"


def test_to_markdown_with_base_url() -> None:
    markdown = transcoder.to_markdown('<p><a href="/display/DOC">Docs</a></p>', base_url="https://wiki.example.com")
    assert markdown == "[Docs](https://wiki.example.com/display/DOC)"


def test_empty_inputs() -> None:
    assert transcoder.to_markdown("") == ""
    assert transcoder.to_storage("") == ""


def test_escaped_input_detection() -> None:
    assert transcoder.is_escaped_string(r"line one\\nline two")
    assert transcoder.is_escaped_string(r'say \\"hi\\"')
    assert not transcoder.is_escaped_string("line one\nline two")
    assert not transcoder.is_escaped_string(r"single \n escape")


def test_unescape_string() -> None:
    assert transcoder.unescape_string(r"a\\nb\\tc") == "a\nb\tc"
    assert transcoder.unescape_string("quote \\\\\" and \\\\'") == "quote \" and '"
    assert transcoder.unescape_string("path \\\\\\\\ end") == "path \\ end"


def test_to_storage_unescapes_and_warns(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        storage = transcoder.to_storage(r"# Title\\n\\nBody")
    assert storage == "<h1>Title</h1>\n<p>Body</p>"
    assert any("escaped string" in record.getMessage() for record in caplog.records)


def test_to_storage_linkifies_urls_and_allows_html() -> None:
    storage = transcoder.to_storage("Visit https://example.com today\n\n<b>bold</b>")
    assert '<a href="https://example.com">https://example.com</a>' in storage
    assert "<b>bold</b>" in storage


def test_validate_rejects_html() -> None:
    result = transcoder.validate_markdown_input("<p>Hello</p>")
    assert not result.is_valid
    assert "HTML" in result.message


def test_validate_rejects_escaped_content() -> None:
    result = transcoder.validate_markdown_input(r"Hello\\nWorld")
    assert not result.is_valid
    assert "escaped" in result.message


def test_validate_rejects_storage_signature_without_tags() -> None:
    result = transcoder.validate_markdown_input("image class confluence-embedded-image here")
    assert not result.is_valid
    assert "Storage Format" in result.message


def test_validate_accepts_markdown() -> None:
    result = transcoder.validate_markdown_input("# Title\n\n- item")
    assert result.is_valid


def test_process_input_content_passes_rejected_content_through(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        assert transcoder.process_input_content("<p>Already HTML</p>", is_markdown=True) == "<p>Already HTML</p>"
    assert caplog.records


def test_process_input_content_converts_markdown() -> None:
    assert transcoder.process_input_content("**bold**", is_markdown=True) == "<p><strong>bold</strong></p>"
    assert transcoder.process_input_content("**bold**", is_markdown=False) == "**bold**"


def test_process_page_content() -> None:
    assert transcoder.process_page_content("<p>Hi</p>") == "<p>Hi</p>"
    assert transcoder.process_page_content("<p>Hi</p>", convert_to_markdown=True) == "Hi"
