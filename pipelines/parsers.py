"""Page parsing for DocScout.

Turns fetched HTML or Markdown into a structured plain-text representation that
keeps code fences, list items, tables and heading hierarchy intact for later LLM
consumption, plus the page's headings and outbound links.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlsplit

import markdown
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from .links import normalize_url

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = (".md", ".markdown")
MAIN_CONTENT_SELECTOR = 'main, article, [role="main"], .content, .markdown-body, .documentation'
DEFAULT_MAX_HEADINGS = 20

SKIPPED_TAGS = {"script", "style", "noscript", "template", "nav", "footer", "aside", "header"}
SKIPPED_CLASSES = {"sidebar", "menu", "navigation"}
HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
INLINE_TAGS = {
    "a", "abbr", "b", "bdi", "cite", "code", "em", "i", "kbd", "mark", "q", "s",
    "samp", "small", "span", "strong", "sub", "sup", "time", "u", "var", "br",
}

_SPACES_RE = re.compile(r"\s+")
_LANGUAGE_CLASS_RE = re.compile(r"^(?:language|lang)-([\w+#-]+)$")
_ATX_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")


@dataclass
class ParsedPage:
    """Extracted content of one fetched page."""
    text: str
    headings: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)


def is_markdown(url: str, content_type: str) -> bool:
    """Detect Markdown by content type or file extension."""
    if "markdown" in (content_type or "").lower():
        return True
    path = urlsplit(url).path.lower()
    return path.endswith(MARKDOWN_EXTENSIONS)


def _clean_inline(text: str) -> str:
    return _SPACES_RE.sub(" ", text).strip()


def _is_skipped(tag: Tag) -> bool:
    if tag.name in SKIPPED_TAGS:
        return True
    if tag.get("role") == "navigation":
        return True
    classes = set(tag.get("class") or [])
    return bool(classes & SKIPPED_CLASSES)


def _code_language(pre: Tag, code: Optional[Tag]) -> str:
    for element in (code, pre):
        if element is None:
            continue
        for css_class in element.get("class") or []:
            match = _LANGUAGE_CLASS_RE.match(css_class)
            if match:
                return match.group(1)
        if element.get("data-lang"):
            return element["data-lang"]
    return "text"


def _render_pre(pre: Tag) -> str:
    code = pre.find("code")
    body = (code or pre).get_text().strip("\n").rstrip()
    if not body.strip():
        return ""
    return f"```{_code_language(pre, code)}\n{body}\n```"


def _render_list(list_tag: Tag, depth: int = 0) -> List[str]:
    lines = []
    ordered = list_tag.name == "ol"
    for position, item in enumerate(list_tag.find_all("li", recursive=False), start=1):
        own_text = "".join(
            str(piece) for piece in item.find_all(string=True)
            if not isinstance(piece, Comment) and piece.find_parent(["ul", "ol"]) is list_tag
        )
        text = _clean_inline(own_text)
        if text:
            marker = f"{position}." if ordered else "-"
            lines.append(f"{'  ' * depth}{marker} {text}")
        for nested in item.find_all(["ul", "ol"]):
            if nested.find_parent(["ul", "ol"]) is list_tag:
                lines.extend(_render_list(nested, depth + 1))
    return lines


def _render_table(table: Tag) -> str:
    rows = []
    for index, row in enumerate(table.find_all("tr")):
        cells = [_clean_inline(cell.get_text(" ")) for cell in row.find_all(["th", "td"])]
        if not cells:
            continue
        rows.append(f"| {' | '.join(cells)} |")
        if index == 0 and row.find("th") is not None:
            rows.append(f"| {' | '.join('---' for _ in cells)} |")
    return "\n".join(rows)


class _BlockRenderer:
    """Walks a content tree and emits markdown-like text blocks in document order."""

    def __init__(self):
        self.blocks: List[str] = []
        self._inline: List[str] = []

    def _flush(self):
        text = _clean_inline("".join(self._inline))
        self._inline = []
        if text:
            self.blocks.append(text)

    def _add_block(self, text: str):
        self._flush()
        if text:
            self.blocks.append(text)

    def _walk(self, node: Tag):
        for child in node.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                self._inline.append(str(child))
                continue
            if not isinstance(child, Tag) or _is_skipped(child):
                continue

            name = child.name
            if name == "pre":
                self._add_block(_render_pre(child))
            elif name in HEADING_TAGS:
                text = _clean_inline(child.get_text(" "))
                if text:
                    self._add_block(f"{'#' * int(name[1])} {text}")
            elif name == "p":
                self._add_block(_clean_inline(child.get_text()))
            elif name in ("ul", "ol"):
                self._add_block("\n".join(_render_list(child)))
            elif name == "table":
                self._add_block(_render_table(child))
            elif name == "br":
                self._inline.append(" ")
            elif name in INLINE_TAGS:
                self._inline.append(child.get_text())
            else:
                self._flush()
                self._walk(child)
                self._flush()

    def render(self, root: Tag) -> str:
        self._walk(root)
        self._flush()
        return "\n\n".join(self.blocks).strip()


def _mark_inline_code(root: Tag):
    """Wrap short inline code spans (outside of <pre>) in backticks."""
    for code in root.find_all("code"):
        if code.find_parent("pre") is not None:
            continue
        text = code.get_text().strip()
        if text and len(text) < 100:
            code.replace_with(NavigableString(f"`{text}`"))


def structured_text(root: Tag) -> str:
    """Render a parsed tree as plain/markdown-like text."""
    _mark_inline_code(root)
    return _BlockRenderer().render(root)


def extract_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    """Extract normalized, de-duplicated outbound links in document order."""
    links: List[str] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        normalized = normalize_url(anchor["href"], base_url)
        if normalized and normalized not in seen:
            seen.add(normalized)
            links.append(normalized)
    return links


def parse_html(url: str, html: str, max_headings: int = DEFAULT_MAX_HEADINGS) -> ParsedPage:
    """Parse an HTML document.

    Args:
        url: URL the document was fetched from (base for relative links)
        html: Raw HTML
        max_headings: Maximum number of h1-h4 headings to collect

    Returns:
        ParsedPage with structured main-content text, headings and links
    """
    soup = BeautifulSoup(html, "html.parser")

    headings = []
    for heading in soup.find_all(["h1", "h2", "h3", "h4"]):
        text = _clean_inline(heading.get_text(" "))
        if text:
            headings.append(text)
        if len(headings) >= max_headings:
            break

    links = extract_links(soup, url)

    container = soup.select_one(MAIN_CONTENT_SELECTOR) or soup.body or soup
    text = structured_text(container)

    logger.debug(f"Parsed HTML {url}: {len(text)} chars, {len(headings)} headings, {len(links)} links")
    return ParsedPage(text=text, headings=headings, links=links)


def _markdown_headings(content: str, max_headings: int) -> List[str]:
    headings = []
    in_fence = False
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("```") or stripped.startswith("~~~"):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _ATX_HEADING_RE.match(stripped)
        if match:
            headings.append(match.group(2).strip())
            if len(headings) >= max_headings:
                break
    return headings


def parse_markdown(content: str, max_headings: int = DEFAULT_MAX_HEADINGS) -> ParsedPage:
    """Normalize a Markdown document to plain text.

    Emphasis and link markup are dropped; fenced code, lists, tables and headings
    are re-flowed the same way as HTML pages. Links are not followed from Markdown.
    """
    html = markdown.markdown(content, extensions=["fenced_code", "tables"])
    soup = BeautifulSoup(html, "html.parser")
    return ParsedPage(
        text=structured_text(soup),
        headings=_markdown_headings(content, max_headings),
        links=[],
    )


def parse_content(url: str, body: str, content_type: str,
                  max_headings: int = DEFAULT_MAX_HEADINGS) -> ParsedPage:
    """Dispatch on detected content type.

    Markdown and HTML are parsed; anything else is passed through as raw text.
    """
    if is_markdown(url, content_type):
        return parse_markdown(body, max_headings)
    if "html" in (content_type or "").lower():
        return parse_html(url, body, max_headings)
    return ParsedPage(text=body.strip())
