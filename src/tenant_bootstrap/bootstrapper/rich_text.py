"""Rich text input: HTML, Markdown and plain text to structured document nodes."""

from typing import Any

from bs4 import BeautifulSoup, NavigableString, Tag
from markdown_it import MarkdownIt

from .context import get_translation

RICH_TEXT_FORMATS = ("json", "html", "plainText", "markdown")

BLOCK_TYPES = {
    "p": "paragraph",
    "h1": "heading1",
    "h2": "heading2",
    "h3": "heading3",
    "h4": "heading4",
    "h5": "heading5",
    "h6": "heading6",
    "ul": "unordered-list",
    "ol": "ordered-list",
    "li": "list-item",
    "blockquote": "quote",
    "pre": "preformatted",
    "table": "table",
    "thead": "table-head",
    "tbody": "table-body",
    "tr": "table-row",
    "td": "table-cell",
    "th": "table-head-cell",
    "div": "container",
    "section": "container",
}

INLINE_TYPES = {
    "strong": "strong",
    "b": "strong",
    "em": "emphasized",
    "i": "emphasized",
    "u": "underlined",
    "s": "deleted",
    "del": "deleted",
    "code": "code",
    "sub": "subscripted",
    "sup": "superscripted",
    "a": "link",
    "span": "span",
    "abbr": "abbreviation",
}

_markdown = MarkdownIt("commonmark")


def text_to_json(text: str) -> list[dict[str, Any]]:
    """Wrap plain text as a single paragraph."""
    return [
        {
            "kind": "block",
            "type": "paragraph",
            "children": [{"kind": "inline", "type": "span", "textContent": text}],
        }
    ]


def _convert(node: Any) -> dict[str, Any] | None:
    if isinstance(node, NavigableString):
        text = str(node)
        if not text.strip():
            return None
        return {"kind": "inline", "textContent": text}

    if not isinstance(node, Tag):
        return None

    name = node.name.lower()
    if name == "br":
        return {"kind": "inline", "type": "line-break"}

    children = [c for c in (_convert(child) for child in node.children) if c is not None]

    if name in BLOCK_TYPES:
        result: dict[str, Any] = {"kind": "block", "type": BLOCK_TYPES[name], "children": children}
    else:
        result = {"kind": "inline", "type": INLINE_TYPES.get(name, "span"), "children": children}

    if name == "a" and node.get("href"):
        result["metadata"] = {"href": node["href"]}

    return result


def html_to_json(html: str) -> list[dict[str, Any]]:
    """Convert semantic HTML to a list of structured document nodes.

    Loose top-level text is wrapped in a paragraph so every root node is a block.
    """
    soup = BeautifulSoup(html, "html.parser")
    nodes: list[dict[str, Any]] = []
    for child in soup.contents:
        converted = _convert(child)
        if converted is None:
            continue
        if converted["kind"] == "inline":
            converted = {"kind": "block", "type": "paragraph", "children": [converted]}
        nodes.append(converted)
    return nodes


def markdown_to_json(markdown: str) -> list[dict[str, Any]]:
    return html_to_json(_markdown.render(markdown))


def _is_untranslated(content: dict[str, Any]) -> bool:
    keys = list(content.keys())
    return bool(keys) and keys[0] in RICH_TEXT_FORMATS


def create_rich_text_input(content: Any, language: str) -> dict[str, Any]:
    """Rich text mutation input for a spec value.

    Accepts a string, one of the {json|html|plainText|markdown} objects, or a
    per-language map of either. Returns an empty dict when there is nothing
    to send.
    """
    if content is None:
        return {}
    if isinstance(content, str):
        return {"json": text_to_json(content)}
    if not isinstance(content, dict):
        return {}

    translated = content if _is_untranslated(content) else get_translation(content, language)

    if translated is None:
        return {}
    if isinstance(translated, str):
        return {"json": text_to_json(translated)}
    if not isinstance(translated, dict):
        return {}

    if translated.get("json") is not None:
        return {"json": translated["json"]}
    if translated.get("html"):
        return {"json": html_to_json(translated["html"])}
    if translated.get("markdown"):
        return {"json": markdown_to_json(translated["markdown"])}
    if translated.get("plainText") is not None:
        return {"json": text_to_json(translated["plainText"])}
    return {}
