from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import feedparser

from .errors import ErrorKind, IngestError
from .utils import parse_date_value


@dataclass(frozen=True)
class FeedEntry:
    guid: str | None
    link: str | None
    title: str | None
    published: datetime | None
    updated: datetime | None


@dataclass(frozen=True)
class ParsedFeed:
    title: str | None
    entries: list[FeedEntry]
    bozo_error: str | None


def parse_feed(content: bytes | str) -> ParsedFeed:
    """Parse RSS or Atom content, keeping entries in document order.

    A feed with a format error is accepted as long as feedparser recovered
    any entries; ``bozo_error`` carries the message in that case.
    """
    parsed = feedparser.parse(content)
    entries = [_to_entry(entry) for entry in parsed.entries or []]
    bozo_error = None
    if parsed.get("bozo"):
        bozo_error = str(parsed.get("bozo_exception") or "malformed feed")
        if not entries and not parsed.get("version"):
            raise IngestError(f"unparseable feed: {bozo_error}", ErrorKind.PARSE)
    feed_meta = parsed.get("feed") or {}
    return ParsedFeed(
        title=_clean(feed_meta.get("title")),
        entries=entries,
        bozo_error=bozo_error,
    )


def _to_entry(entry: Any) -> FeedEntry:
    # feedparser maps both the RSS <guid> and the Atom <id> to ``id``.
    guid = _clean(entry.get("id")) or _clean(entry.get("guid"))
    link = _clean(entry.get("link"))
    if not link:
        for candidate in entry.get("links") or []:
            href = _clean(candidate.get("href"))
            if href and candidate.get("rel", "alternate") == "alternate":
                link = href
                break
    return FeedEntry(
        guid=guid,
        link=link,
        title=entry.get("title"),
        published=parse_date_value(entry.get("published_parsed"))
        or parse_date_value(entry.get("published")),
        updated=parse_date_value(entry.get("updated_parsed"))
        or parse_date_value(entry.get("updated")),
    )


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
