#!/usr/bin/env python3
"""Plain data records passed between the store and the sync pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass
class Feed:
    """A subscribed feed as stored in the feeds table."""

    id: int
    url: str
    title: str = ""
    website: str = ""
    folder_id: Optional[int] = None
    last_fetched: int = 0
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Feed":
        return cls(
            id=row['id'],
            url=row['url'],
            title=row.get('title') or "",
            website=row.get('website') or "",
            folder_id=row.get('folder_id'),
            last_fetched=row.get('last_fetched') or 0,
            error=row.get('error'),
        )


@dataclass
class FeedItem:
    """One relay item after field extraction, before any business logic."""

    title: str = ""
    link: str = ""
    guid: str = ""
    id: str = ""
    comments: str = ""
    date: str = ""
    content: str = ""
    author: Optional[str] = None


@dataclass
class Article:
    """An article ready to be inserted (id is None until stored)."""

    feed_id: int
    guid: str
    title: str
    link: str
    content: str
    snippet: str
    author: Optional[str]
    published: str
    received: int
    read: int = 0
    starred: int = 0
    words: List[str] = field(default_factory=list)
    id: Optional[int] = None

    def with_read(self, read: int) -> "Article":
        return replace(self, read=read)


@dataclass
class LinkBackfill:
    """A link to write onto an already stored article.

    Exactly one of guid or article_id identifies the target row.
    """

    link: str
    guid: Optional[str] = None
    article_id: Optional[int] = None


@dataclass
class ReconcileResult:
    new_articles: List[Article]
    link_backfills: List[LinkBackfill]


@dataclass
class SyncResult:
    """Counts produced by one successful feed sync."""

    unread: int = 0
    archived: int = 0
    total: int = 0
    backfilled: int = 0


@dataclass
class FeedOutcome:
    """Result of one feed inside a fleet refresh: a SyncResult or an error message."""

    feed: Feed
    result: Optional[SyncResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RefreshProgress:
    completed: int
    total: int
