"""Boilerplate stripping for captured pages (nav, ads, banners, scripts)."""

from __future__ import annotations

import html as html_lib
from dataclasses import dataclass

from bs4 import BeautifulSoup, Tag

BOILERPLATE_SELECTORS: tuple[str, ...] = (
    "nav",
    "header",
    "footer",
    ".navigation",
    ".nav",
    ".menu",
    ".sidebar",
    ".advertisement",
    ".ad",
    ".ads",
    ".social-share",
    ".comments",
    ".related-posts",
    ".cookie-banner",
    ".popup",
    ".modal",
    "script",
    "style",
    "iframe",
    "noscript",
)

# Ordered: the first selector that matches wins.
MAIN_CONTENT_SELECTORS: tuple[str, ...] = (
    "article",
    "main",
    '[role="main"]',
    ".content",
    ".main-content",
    ".article-content",
    ".post-content",
    "#content",
    "#main",
)


@dataclass(slots=True)
class CleanedPage:
    html: str
    main_selector: str | None  # None when the body fallback was used
    removed_nodes: int


def strip_boilerplate(html: str) -> CleanedPage:
    """Return the main content of ``html`` as a minimal standalone document."""

    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""

    removed = 0
    for selector in BOILERPLATE_SELECTORS:
        for node in soup.select(selector):
            if node.decomposed:
                continue
            node.decompose()
            removed += 1

    main, selector_used = select_main_content(soup)
    fragment = BeautifulSoup(main.decode_contents(), "html.parser")
    removed += prune_empty_leaves(fragment)

    return CleanedPage(
        html=_wrap_document(str(fragment).strip(), title),
        main_selector=selector_used,
        removed_nodes=removed,
    )


def select_main_content(soup: BeautifulSoup) -> tuple[Tag, str | None]:
    for selector in MAIN_CONTENT_SELECTORS:
        candidate = soup.select_one(selector)
        if candidate is not None:
            return candidate, selector
    return (soup.body or soup), None


def prune_empty_leaves(root: Tag) -> int:
    """Remove elements with no text and no element children, bottom-up.

    Walking in reverse document order visits descendants before their
    ancestors, so wrappers emptied by the removal of their children are
    removed in the same pass.
    """

    removed = 0
    for node in reversed(root.find_all(True)):
        if node.find(True) is None and not node.get_text(strip=True):
            node.decompose()
            removed += 1
    return removed


def _wrap_document(body: str, title: str) -> str:
    head = '<meta charset="utf-8">'
    if title:
        head += f"<title>{html_lib.escape(title)}</title>"
    return f"<!DOCTYPE html><html><head>{head}</head><body>{body}</body></html>"
