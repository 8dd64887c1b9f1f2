#!/usr/bin/env python3
"""
Relay item extraction.

The relay emits items in several dialects (RSS 2.0, Atom, RDF) and the same
concept can live under different keys. extract_item() applies one fixed
priority list per field and returns a FeedItem, so nothing downstream needs
to probe raw dictionaries.
"""

from typing import Any, Dict, Optional

from records import FeedItem

# Priority order per field, first non-empty string wins
CONTENT_FIELDS = ('content:encoded', 'content', 'summary', 'description')
AUTHOR_FIELDS = ('creator', 'dc:creator', 'author')
DATE_FIELDS = ('isoDate', 'pubDate')


def _as_text(value: Any) -> str:
    """Return value when it is a non-blank string, else ''."""
    if isinstance(value, str) and value.strip():
        return value
    return ""


def _first_text(raw: Dict[str, Any], fields) -> str:
    for field in fields:
        value = _as_text(raw.get(field))
        if value:
            return value
    return ""


def extract_link(value: Any) -> str:
    """Feed-supplied link: a string, a list of links, or an Atom {href} object."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get('href')
    return _as_text(value).strip()


def _extract_author(raw: Dict[str, Any]) -> Optional[str]:
    for field in AUTHOR_FIELDS:
        value = raw.get(field)
        if isinstance(value, dict):
            value = value.get('name')
        text = _as_text(value)
        if text:
            return text.strip()
    return None


def extract_item(raw: Dict[str, Any]) -> FeedItem:
    """Normalize one relay item dictionary."""
    if not isinstance(raw, dict):
        return FeedItem()
    return FeedItem(
        title=_as_text(raw.get('title')),
        link=extract_link(raw.get('link')),
        guid=_as_text(raw.get('guid')),
        id=_as_text(raw.get('id')),
        comments=_as_text(raw.get('comments')),
        date=_first_text(raw, DATE_FIELDS),
        content=_first_text(raw, CONTENT_FIELDS),
        author=_extract_author(raw),
    )
