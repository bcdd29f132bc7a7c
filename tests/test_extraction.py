# tests/test_extraction.py
from unittest.mock import AsyncMock

import pytest

from conftest import make_page
from crawlengine.exceptions import ExtractionFailure
from crawlengine.extraction import (
    EXTRACTION_SELECTORS,
    MAX_LINKS,
    VISIBLE_ELEMENTS_SCRIPT,
    collect_visible_elements,
    extract_from_html,
    extract_page_data,
)

HTML = """
<html lang="de">
<head>
    <title> Product Page </title>
    <meta name="description" content="Buy things">
    <meta name="keywords" content="things, stuff">
    <meta name="robots" content="index, follow">
    <meta property="og:title" content="Product">
    <meta property="og:image" content="https://cdn.example.com/p.jpg">
    <link rel="canonical" href="https://shop.example.com/product">
</head>
<body>
    <h1>Product</h1>
    <h2>Details</h2>
    <p>Three little words</p>
    <h3>Reviews</h3>
    <a href="/cart">Cart</a>
    <a href="https://shop.example.com/cart">Cart again</a>
    <a href="https://other.example.org/">Partner</a>
    <a href="#top">Top</a>
    <a href="javascript:void(0)">Noop</a>
    <a href="mailto:hi@example.com">Mail</a>
</body>
</html>
"""


class TestExtractFromHtml:
    """Tests for HTML extraction."""

    @pytest.fixture
    def data(self):
        return extract_from_html(HTML, "https://shop.example.com/product")

    def test_title_and_lang(self, data):
        assert data["title"] == "Product Page"
        assert data["lang"] == "de"
        assert data["url"] == "https://shop.example.com/product"

    def test_meta(self, data):
        meta = data["meta"]

        assert meta["description"] == "Buy things"
        assert meta["keywords"] == "things, stuff"
        assert meta["robots"] == "index, follow"
        assert meta["canonical"] == "https://shop.example.com/product"
        assert meta["open_graph"] == {
            "og:title": "Product",
            "og:image": "https://cdn.example.com/p.jpg",
        }

    def test_headings_in_document_order(self, data):
        assert data["headers"] == [
            {"type": "h1", "text": "Product"},
            {"type": "h2", "text": "Details"},
            {"type": "h3", "text": "Reviews"},
        ]

    def test_links(self, data):
        """Tests that links are absolutized, deduplicated and classified."""
        assert data["links"] == [
            {"href": "https://shop.example.com/cart", "text": "Cart", "internal": True},
            {"href": "https://other.example.org/", "text": "Partner", "internal": False},
        ]

    def test_text(self, data):
        assert "Three little words" in data["text"]
        assert data["word_count"] > 3

    def test_empty_document(self):
        data = extract_from_html("", "https://example.com/")

        assert data["title"] is None
        assert data["headers"] == []
        assert data["links"] == []
        assert data["word_count"] == 0

    def test_link_cap(self):
        html = "<body>" + "".join(f'<a href="/p{i}">p{i}</a>' for i in range(MAX_LINKS + 20)) + "</body>"

        data = extract_from_html(html, "https://example.com/")

        assert len(data["links"]) == MAX_LINKS


class TestExtractPageData:
    """Tests for page-level extraction."""

    @pytest.mark.asyncio
    async def test_extracts_loaded_page(self):
        page = make_page(html=HTML)
        page.url = "https://shop.example.com/product"
        page.evaluate = AsyncMock(return_value=[{"selector": "h1", "tag": "h1", "text": "Product", "href": None}])

        data = await extract_page_data(page)

        assert data["title"] == "Product Page"
        assert data["visible_elements"][0]["text"] == "Product"
        script, args = page.evaluate.call_args.args
        assert script == VISIBLE_ELEMENTS_SCRIPT
        assert args == [EXTRACTION_SELECTORS, 50]

    @pytest.mark.asyncio
    async def test_content_failure_is_wrapped(self):
        page = make_page()
        page.url = "https://example.com/"
        page.content = AsyncMock(side_effect=RuntimeError("Execution context was destroyed"))

        with pytest.raises(ExtractionFailure) as exc_info:
            await extract_page_data(page)

        assert exc_info.value.url == "https://example.com/"
        assert "Execution context was destroyed" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_visible_elements_limit(self):
        page = make_page()
        page.evaluate = AsyncMock(return_value=[{"tag": "p"}] * 10)

        elements = await collect_visible_elements(page, selectors=["p"], limit=3)

        assert len(elements) == 3
