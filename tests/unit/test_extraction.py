"""
Tests for selector extraction over HTML and JSON documents.
"""

import pytest

from techtransfer_scraper.engines.extraction import (
    clean_text,
    document_language,
    extract_fields,
    extract_html,
    extract_json,
    find_links,
    looks_like_json,
    visible_text,
)
from techtransfer_scraper.recovery.errors import ParseError

LISTING = """
<html lang="en">
  <body>
    <h1 class="tech-title">  Widget
      Mk II </h1>
    <div class="tech-description">A gadget</div>
    <ul>
      <li class="inventor">Ada</li>
      <li class="inventor">Grace</li>
    </ul>
    <nav class="pagination">
      <a href="/list?page=2">2</a>
      <a href="https://tech.stanford.edu/list?page=3#top">3</a>
      <a href="https://elsewhere.org/list?page=4">4</a>
      <a href="mailto:otl@stanford.edu">mail</a>
      <a href="/list?page=2">2 again</a>
    </nav>
    <script>var ignored = 1;</script>
  </body>
</html>
"""


@pytest.mark.unit
class TestHtmlExtraction:
    def test_single_match_is_scalar_and_cleaned(self):
        fields = extract_html(LISTING, {"title": ".tech-title"})

        assert fields == {"title": "Widget Mk II"}

    def test_multiple_matches_keep_document_order(self):
        fields = extract_html(LISTING, {"inventors": ".inventor"})

        assert fields["inventors"] == ["Ada", "Grace"]

    def test_required_miss_raises_parse_error(self):
        with pytest.raises(ParseError) as excinfo:
            extract_html(LISTING, {"title": ".tech-title", "patent": ".patent-number"})

        assert excinfo.value.metadata["field"] == "patent"

    def test_optional_miss_is_tolerated(self):
        optional = {"patent": ".patent-number", "desc": ".tech-description"}

        fields = extract_html(LISTING, {"title": ".tech-title"}, optional)

        assert fields == {"title": "Widget Mk II", "desc": "A gadget"}


@pytest.mark.unit
class TestJsonExtraction:
    PAYLOAD = {
        "data": [
            {"title": " Solar   cell ", "lab": "NREL"},
            {"title": "Battery", "lab": "NREL"},
        ],
        "meta": {"total_pages": 3, "empty": [], "nothing": None},
    }

    def test_dotted_paths_index_lists(self):
        fields = extract_json(self.PAYLOAD, {"first": "data.0.title", "last": "data.-1.title"})

        assert fields == {"first": "Solar cell", "last": "Battery"}

    def test_non_string_values_pass_through(self):
        assert extract_json(self.PAYLOAD, {"pages": "meta.total_pages"}) == {"pages": 3}

    @pytest.mark.parametrize("path", ["data.7.title", "meta.empty", "meta.nothing", "meta.total_pages.x"])
    def test_missing_null_or_empty_is_a_parse_error(self, path):
        with pytest.raises(ParseError):
            extract_json(self.PAYLOAD, {"field": path})

    def test_optional_paths(self):
        fields = extract_json(self.PAYLOAD, {}, {"lab": "data.0.lab", "missing": "data.9.lab"})

        assert fields == {"lab": "NREL"}


@pytest.mark.unit
class TestDispatch:
    def test_json_detected_by_content_type(self):
        fields = extract_fields('{"title": "x"}', "application/json", {"title": "title"})

        assert fields == {"title": "x"}

    def test_json_detected_by_body(self):
        assert looks_like_json("text/plain", '  [{"a": 1}]')
        assert not looks_like_json("text/html", "<html>{}</html>")

    def test_markup_wins_over_a_json_content_type(self):
        html = '\ufeff  <html><body><div class="tech-title">Widget</div></body></html>'

        assert not looks_like_json("application/json", html)
        assert extract_fields(html, "application/json", {"title": ".tech-title"}) == {"title": "Widget"}

    def test_malformed_json_is_a_parse_error(self):
        with pytest.raises(ParseError):
            extract_fields('{"title": ', "application/json", {"title": "title"})

    def test_html_by_default(self):
        assert extract_fields(LISTING, "text/html", {"desc": ".tech-description"}) == {"desc": "A gadget"}


@pytest.mark.unit
class TestDocumentHelpers:
    def test_find_links_resolves_and_filters(self):
        links = find_links(LISTING, ".pagination a", "https://tech.stanford.edu/list")

        assert links == [
            "https://tech.stanford.edu/list?page=2",
            "https://tech.stanford.edu/list?page=3",
        ]

    def test_find_links_across_hosts(self):
        links = find_links(LISTING, ".pagination a", "https://tech.stanford.edu/list", same_host=False)

        assert "https://elsewhere.org/list?page=4" in links

    def test_document_language_from_html_tag(self):
        assert document_language(LISTING) == "en"

    def test_document_language_from_meta(self):
        html = '<html><head><meta http-equiv="Content-Language" content="de-DE, en"></head></html>'

        assert document_language(html) == "de-DE"

    def test_visible_text_drops_scripts(self):
        text = visible_text(LISTING)

        assert "Widget Mk II" in text
        assert "ignored" not in text

    def test_clean_text(self):
        assert clean_text("  a \n\t b ") == "a b"
        assert clean_text(None) == ""
