"""
Selector-based field extraction shared by every engine.

HTML documents are queried with CSS selectors through selectolax; JSON
documents treat each selector as a dotted key path (``data.items.0.title``).
Both follow one contract: a required selector matching nothing is a parse
error, a single match yields a scalar and several matches yield an ordered
list.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin, urlparse

from selectolax.parser import HTMLParser, Node

from techtransfer_scraper.recovery.errors import ParseError

_WHITESPACE_RE = re.compile(r"\s+")
_MISSING = object()

DEFAULT_PAGINATION_LINKS = (
    'a[rel="next"], .pagination a, .pager a, nav.pages a, a.next, li.next a'
)


def clean_text(text: Optional[str]) -> str:
    """Collapse runs of whitespace and strip the ends."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def looks_like_json(content_type: str, text: str) -> bool:
    """Body first: markup is HTML whatever the Content-Type claims."""
    stripped = text.lstrip("\ufeff \t\r\n")
    if stripped.startswith("<"):
        return False
    if "json" in (content_type or ""):
        return True
    return stripped[:1] in ("{", "[") and "<" not in stripped[:64]


def _node_text(node: Node) -> str:
    return clean_text(node.text(separator=" "))


def _select(tree: HTMLParser, name: str, selector: str) -> List[Node]:
    try:
        return tree.css(selector)
    except ValueError as e:
        raise ParseError(f"Invalid selector for '{name}': {selector}", metadata={"field": name}) from e


def extract_html(
    html: str,
    selectors: Mapping[str, str],
    optional_selectors: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Apply CSS selectors to an HTML document.

    Raises:
        ParseError: a required selector matched no element
    """
    tree = HTMLParser(html)
    fields: Dict[str, Any] = {}

    for name, selector in selectors.items():
        nodes = _select(tree, name, selector)
        if not nodes:
            raise ParseError(
                f"Selector for '{name}' matched no elements: {selector}",
                metadata={"field": name, "selector": selector},
            )
        fields[name] = _node_text(nodes[0]) if len(nodes) == 1 else [_node_text(n) for n in nodes]

    for name, selector in (optional_selectors or {}).items():
        if name in fields:
            continue
        nodes = _select(tree, name, selector)
        if nodes:
            fields[name] = _node_text(nodes[0]) if len(nodes) == 1 else [_node_text(n) for n in nodes]

    return fields


def resolve_path(payload: Any, path: str) -> Any:
    """Follow a dotted key path; numeric segments index into lists."""
    current = payload
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _json_value(value: Any) -> Any:
    if isinstance(value, str):
        return clean_text(value)
    if isinstance(value, list):
        if len(value) == 1:
            return _json_value(value[0])
        return [_json_value(v) for v in value]
    return value


def extract_json(
    payload: Any,
    selectors: Mapping[str, str],
    optional_selectors: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Apply dotted key paths to a decoded JSON document.

    Raises:
        ParseError: a required path is absent, null or an empty list
    """
    fields: Dict[str, Any] = {}
    for name, path in selectors.items():
        value = resolve_path(payload, path)
        if value is _MISSING or value is None or value == []:
            raise ParseError(
                f"Path for '{name}' matched nothing: {path}",
                metadata={"field": name, "selector": path},
            )
        fields[name] = _json_value(value)

    for name, path in (optional_selectors or {}).items():
        if name in fields:
            continue
        value = resolve_path(payload, path)
        if value is not _MISSING and value is not None and value != []:
            fields[name] = _json_value(value)
    return fields


def extract_fields(
    text: str,
    content_type: str,
    selectors: Mapping[str, str],
    optional_selectors: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Dispatch to JSON or HTML extraction based on the document."""
    if looks_like_json(content_type, text):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Malformed JSON document: {e}") from e
        return extract_json(payload, selectors, optional_selectors)
    return extract_html(text, selectors, optional_selectors)


def find_links(html: str, selector: str, base_url: str, same_host: bool = True) -> List[str]:
    """Absolute, de-duplicated ``href`` targets of the elements matching ``selector``."""
    tree = HTMLParser(html)
    base_host = urlparse(base_url).hostname
    links: List[str] = []
    seen = set()
    try:
        nodes = tree.css(selector)
    except ValueError:
        return []
    for node in nodes:
        href = node.attributes.get("href")
        if not href or href.startswith(("#", "javascript:", "mailto:")):
            continue
        absolute = urljoin(base_url, href).split("#", 1)[0]
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            continue
        if same_host and parsed.hostname != base_host:
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


def document_language(html: str) -> Optional[str]:
    """Language declared by ``<html lang>`` or a content-language meta tag."""
    tree = HTMLParser(html)
    root = tree.css_first("html")
    if root is not None:
        lang = root.attributes.get("lang") or root.attributes.get("xml:lang")
        if lang:
            return lang.strip()
    for meta in tree.css("meta"):
        attrs = meta.attributes
        marker = (attrs.get("http-equiv") or attrs.get("name") or "").lower()
        if marker in ("content-language", "language") and attrs.get("content"):
            return attrs["content"].split(",")[0].strip()
    return None


def visible_text(html: str) -> str:
    """Body text without scripts or styles, for statistical language detection."""
    tree = HTMLParser(html)
    for tag in tree.css("script, style, noscript"):
        tag.decompose()
    body = tree.body
    return clean_text(body.text(separator=" ") if body is not None else tree.text(separator=" "))
