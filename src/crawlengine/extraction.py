"""Page data extraction: document metadata, headings, links and visible elements."""

import logging
from typing import Any, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .exceptions import ExtractionFailure

logger = logging.getLogger(__name__)

MAX_LINKS = 100
MAX_TEXT_LENGTH = 20000
MAX_VISIBLE_ELEMENTS = 50

# Fixed selector list for the visible element sample
EXTRACTION_SELECTORS = [
    "h1", "h2", "h3",
    "p",
    "a[href]",
    "button",
    "img[alt]",
    "li",
    "table",
    "form",
    "[role='main']",
    "article",
]

VISIBLE_ELEMENTS_SCRIPT = """
([selectors, limit]) => {
    const isVisible = (el) => {
        const style = window.getComputedStyle(el);
        const rect = el.getBoundingClientRect();
        return style.display !== 'none' &&
               style.visibility !== 'hidden' &&
               style.opacity !== '0' &&
               rect.width > 0 &&
               rect.height > 0;
    };
    const elements = [];
    for (const selector of selectors) {
        let matches;
        try {
            matches = document.querySelectorAll(selector);
        } catch (e) {
            continue;
        }
        for (const el of matches) {
            if (elements.length >= limit) return elements;
            if (!isVisible(el)) continue;
            elements.push({
                selector: selector,
                tag: el.tagName.toLowerCase(),
                text: (el.innerText || el.getAttribute('alt') || '').trim().substring(0, 200),
                href: el.getAttribute('href')
            });
        }
    }
    return elements;
}
"""


def extract_from_html(html: str, base_url: str) -> dict[str, Any]:
    """Extract structured data from an HTML document.

    Args:
        html: Rendered page HTML
        base_url: URL the document was loaded from, used to absolutize links

    Returns:
        Dict with title, meta, headings, links and text
    """
    soup = BeautifulSoup(html, "html.parser")
    base_domain = urlparse(base_url).netloc

    # Title
    title = soup.find("title")
    title_text = title.get_text(strip=True) if title else None

    # Meta tags
    description_tag = soup.find("meta", attrs={"name": "description"})
    keywords_tag = soup.find("meta", attrs={"name": "keywords"})
    robots_tag = soup.find("meta", attrs={"name": "robots"})

    open_graph = {}
    for meta in soup.find_all("meta", property=True):
        if meta.get("property", "").startswith("og:"):
            open_graph[meta["property"]] = meta.get("content", "")

    canonical = soup.find("link", attrs={"rel": "canonical"})
    html_tag = soup.find("html")

    # Headings in document order
    headings = [
        {"type": tag.name, "text": tag.get_text(strip=True)}
        for tag in soup.find_all(["h1", "h2", "h3"])
    ]

    # Links
    links = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        absolute_url = urljoin(base_url, href)
        if absolute_url in seen:
            continue
        seen.add(absolute_url)
        links.append({
            "href": absolute_url,
            "text": anchor.get_text(strip=True),
            "internal": urlparse(absolute_url).netloc == base_domain,
        })
        if len(links) >= MAX_LINKS:
            break

    body = soup.body or soup
    text = body.get_text(separator=" ", strip=True)

    return {
        "title": title_text,
        "url": base_url,
        "lang": html_tag.get("lang") if html_tag else None,
        "meta": {
            "description": description_tag.get("content") if description_tag else None,
            "keywords": keywords_tag.get("content") if keywords_tag else None,
            "robots": robots_tag.get("content") if robots_tag else None,
            "canonical": canonical.get("href") if canonical else None,
            "open_graph": open_graph,
        },
        "headers": headings,
        "links": links,
        "text": text[:MAX_TEXT_LENGTH],
        "word_count": len(text.split()),
    }


async def collect_visible_elements(
    page,
    selectors: Optional[list[str]] = None,
    limit: int = MAX_VISIBLE_ELEMENTS,
) -> list[dict]:
    """Sample visible elements matching the selector list, in selector order."""
    elements = await page.evaluate(VISIBLE_ELEMENTS_SCRIPT, [selectors or EXTRACTION_SELECTORS, limit])
    return list(elements or [])[:limit]


async def extract_page_data(page) -> dict[str, Any]:
    """Run the extraction procedure on a loaded page.

    Args:
        page: Playwright page after navigation and selector wait

    Returns:
        Extracted data including a ``visible_elements`` sample

    Raises:
        ExtractionFailure: If the page content cannot be read or parsed
    """
    url = getattr(page, "url", "") or ""
    try:
        html = await page.content()
        data = extract_from_html(html, url)
        data["visible_elements"] = await collect_visible_elements(page)
    except ExtractionFailure:
        raise
    except Exception as e:
        raise ExtractionFailure(f"Extraction failed: {e}", url=url) from e

    logger.debug(
        f"Extracted {len(data['headers'])} headings, {len(data['links'])} links, "
        f"{len(data['visible_elements'])} visible elements from {url}"
    )
    return data
