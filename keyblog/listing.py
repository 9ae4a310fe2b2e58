"""
Pagination + sorting over the article and key collections.
"""

import math
from datetime import datetime, timezone
from typing import NamedTuple

from keyblog.keys import UNLIMITED, parse_ts

ARTICLE_SORTS = ("date_desc", "date_asc", "views_desc", "views_asc")
KEY_SORTS = (
    "status_desc",
    "status_asc",
    "duration_asc",
    "duration_desc",
    "time_desc",
    "time_asc",
)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Page(NamedTuple):
    items: list
    page: int
    limit: int
    total: int
    pages: int


def to_int(raw, default: int) -> int:
    """Query-string integer; missing, garbage or zero → *default*."""
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value or default


def paginate(
    items: list,
    page: int,
    limit: int,
    *,
    default_limit: int,
    min_limit: int = 1,
    max_limit: int | None = None,
) -> Page:
    limit = limit or default_limit
    limit = max(min_limit, limit)
    if max_limit is not None:
        limit = min(max_limit, limit)
    page = max(1, page)

    total = len(items)
    pages = math.ceil(total / limit)
    if total and page > pages:
        page = pages

    start = (page - 1) * limit
    return Page(items[start : start + limit], page, limit, total, pages)


def sort_articles(items: list, key: str) -> list:
    """Stable sort; unknown *key* keeps the input order."""
    if key in ("date_asc", "date_desc"):
        return sorted(
            items, key=lambda a: a.get("date") or "", reverse=key == "date_desc"
        )
    if key in ("views_asc", "views_desc"):
        return sorted(
            items, key=lambda a: a.get("views") or 0, reverse=key == "views_desc"
        )
    return list(items)


def _created(k: dict) -> datetime:
    return parse_ts(k.get("create_time")) or _EPOCH


def _duration(k: dict) -> float:
    d = k.get("duration_hours", UNLIMITED)
    return math.inf if d == UNLIMITED else d


def sort_keys(items: list, key: str) -> list:
    """
    Stable sort of key records.

    ``status_*`` falls back to newest-first on equal status; ``duration_*``
    ranks unlimited keys above any finite duration.
    """
    if key in ("status_asc", "status_desc"):
        newest_first = sorted(items, key=_created, reverse=True)
        return sorted(
            newest_first,
            key=lambda k: k.get("status") or "",
            reverse=key == "status_desc",
        )
    if key in ("duration_asc", "duration_desc"):
        return sorted(items, key=_duration, reverse=key == "duration_desc")
    if key in ("time_asc", "time_desc"):
        return sorted(items, key=_created, reverse=key == "time_desc")
    return list(items)


def hot_articles(items: list, n: int = 10) -> list:
    return sort_articles(items, "views_desc")[:n]
