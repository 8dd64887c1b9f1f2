#!/usr/bin/env python3
"""Auto-archive partitioning of newly discovered articles."""

from typing import List, Optional, Sequence, Tuple

from config import config
from records import Article
from utils import parse_timestamp


def _sort_key(article: Article) -> float:
    # Unparseable dates sort as oldest
    timestamp = parse_timestamp(article.published)
    return timestamp if timestamp is not None else float('-inf')


def partition_new_articles(
    articles: Sequence[Article],
    unread_limit: Optional[int] = None,
) -> Tuple[List[Article], List[Article]]:
    """Split new articles into an unread head and an archived tail.

    Articles are ordered newest first; the first unread_limit are returned
    with read=0 and the rest with read=1, so bulk backfills never flood the
    inbox.
    """
    limit = config.UNREAD_LIMIT if unread_limit is None else max(unread_limit, 0)
    ordered = sorted(articles, key=_sort_key, reverse=True)
    unread = [article.with_read(0) for article in ordered[:limit]]
    archived = [article.with_read(1) for article in ordered[limit:]]
    return unread, archived
