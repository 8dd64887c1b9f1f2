#!/usr/bin/env python3
"""
Article reconciliation against a feed's stored history.

Turns relay items into Article records keyed by a stable identity, splits
them into new and already-known articles with one batched lookup, and
computes link backfills for stored articles whose link could not be resolved
when they were first seen.
"""

from time import time
from typing import Any, Dict, Iterable, List, Optional, Set

from config import config, get_logger
from items import extract_item
from records import Article, Feed, FeedItem, LinkBackfill, ReconcileResult
from telemetry import trace_span
from urls import resolve_item_link
from utils import make_snippet, now_iso, sanitize_html, tokenize

logger = get_logger("reconciler")


def identity_key(item: FeedItem, resolved_link: str, feed_id: int) -> str:
    """Stable identity for an item across repeated syncs.

    First non-empty of guid, id, comments link, link, title; otherwise
    derived from the resolved link, or title|date|feed_id as a last resort.
    """
    for candidate in (item.guid, item.id, item.comments, item.link, item.title):
        if candidate and candidate.strip():
            return candidate
    # NOTE: a feed that changes its date format mints a new key here
    return resolved_link or f"{item.title.strip()}|{item.date}|{feed_id}"


def _title_key(title: Optional[str]) -> str:
    return (title or "").strip().lower()


def _has_link(link: Optional[str]) -> bool:
    return bool(link and link.strip())


class ArticleReconciler:
    """Separates new articles from known ones and plans link backfills."""

    def __init__(self, db, snippet_length: Optional[int] = None):
        self.db = db
        self.snippet_length = snippet_length if snippet_length is not None else config.SNIPPET_LENGTH

    def build_article(self, feed: Feed, item: FeedItem, received: Optional[int] = None) -> Article:
        """Create the Article record for one extracted item."""
        resolved_link = resolve_item_link(item.link, item.guid, feed.website, feed.url)
        content = sanitize_html(item.content)
        title = item.title or "Untitled"
        return Article(
            feed_id=feed.id,
            guid=identity_key(item, resolved_link, feed.id),
            title=title,
            link=resolved_link,
            content=content,
            snippet=make_snippet(content, self.snippet_length),
            author=item.author,
            published=item.date or now_iso(),
            received=received if received is not None else int(time()),
            words=tokenize(f"{item.title} {content}"),
        )

    def build_articles(self, feed: Feed, raw_items: Iterable[Dict[str, Any]]) -> List[Article]:
        """Articles for every raw item, collapsing repeated identity keys to the first."""
        received = int(time())
        articles: List[Article] = []
        seen: Set[str] = set()
        for raw in raw_items:
            article = self.build_article(feed, extract_item(raw), received)
            if article.guid in seen:
                logger.debug(f"Feed {feed.id}: duplicate item key {article.guid!r} in one payload")
                continue
            seen.add(article.guid)
            articles.append(article)
        return articles

    @trace_span(
        "reconcile",
        tracer_name="reconciler",
        attr_from_args=lambda self, feed, raw_items: {
            "feed.id": int(feed.id),
            "feed.items.count": len(raw_items) if hasattr(raw_items, '__len__') else 0,
        },
    )
    async def reconcile(self, feed: Feed, raw_items: List[Dict[str, Any]]) -> ReconcileResult:
        """Split incoming items into new articles and link backfills for stored ones."""
        processed = self.build_articles(feed, raw_items)
        if not processed:
            return ReconcileResult(new_articles=[], link_backfills=[])

        incoming_guids = [article.guid for article in processed]
        existing_guids: Set[str] = await self.db.execute(
            'check_existing_guids', feed_id=feed.id, guids=incoming_guids
        )

        # Lookups over incoming articles that carry a link; first occurrence wins
        processed_by_guid: Dict[str, Article] = {}
        processed_by_title: Dict[str, Article] = {}
        for article in processed:
            if not article.link:
                continue
            processed_by_guid.setdefault(article.guid, article)
            key = _title_key(article.title)
            if key:
                processed_by_title.setdefault(key, article)

        matched_guids: Set[str] = set()
        updated_ids: Set[int] = set()
        backfills: List[LinkBackfill] = []

        # Pass 1: same identity key, stored link empty, incoming link resolved
        candidates = [a.guid for a in processed if a.link and a.guid in existing_guids]
        if candidates:
            stored = await self.db.execute('get_articles_by_guids', feed_id=feed.id, guids=candidates)
            stored_by_guid = {row['guid']: row for row in stored}
            for guid in candidates:
                row = stored_by_guid.get(guid)
                if row is None or _has_link(row.get('link')):
                    continue
                backfills.append(LinkBackfill(link=processed_by_guid[guid].link, guid=guid))
                matched_guids.add(guid)
                updated_ids.add(row['id'])

        # Pass 2: stored articles still missing a link, matched by key or title
        missing = await self.db.execute('get_articles_missing_link', feed_id=feed.id)
        for row in missing:
            if row['id'] in updated_ids:
                continue
            title_key = _title_key(row.get('title'))
            match = processed_by_guid.get(row['guid']) or (processed_by_title.get(title_key) if title_key else None)
            if match is not None and match.link and match.link != row.get('link'):
                backfills.append(LinkBackfill(link=match.link, article_id=row['id']))
                matched_guids.add(match.guid)
                updated_ids.add(row['id'])

        new_articles = [
            a for a in processed
            if a.guid not in existing_guids and a.guid not in matched_guids
        ]

        logger.info(
            f"Feed {feed.id}: {len(processed)} items, {len(existing_guids)} known, "
            f"{len(new_articles)} new, {len(backfills)} link backfills"
        )
        return ReconcileResult(new_articles=new_articles, link_backfills=backfills)
