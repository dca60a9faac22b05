"""Periodic collection of posts from RSS feeds."""

from __future__ import annotations

import logging
import math
import re
import threading
import time
import uuid
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Optional, Union

import requests
from sqlalchemy.exc import SQLAlchemyError

from rssagg.database import Feed, Queries

logger = logging.getLogger(__name__)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_DAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun",
           "jul", "aug", "sep", "oct", "nov", "dec")

_RFC1123Z = re.compile(
    r"(?P<wday>[A-Za-z]{3}), (?P<day>\d{2}) (?P<mon>[A-Za-z]{3}) (?P<year>\d{4}) "
    r"(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2}) "
    r"(?P<sign>[+-])(?P<oh>\d{2})(?P<om>\d{2})"
)


@dataclass
class RSSItem:
    title: str = ""
    link: str = ""
    description: str = ""
    pub_date: str = ""


@dataclass
class RSSFeed:
    title: str = ""
    link: str = ""
    description: str = ""
    language: str = ""
    items: list[RSSItem] = field(default_factory=list)


def _local_name(tag) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _direct_text(elem: ET.Element) -> str:
    return (elem.text or "") + "".join(child.tail or "" for child in elem)


def _parse_item(elem: ET.Element) -> RSSItem:
    item = RSSItem()
    for child in elem:
        name = _local_name(child.tag)
        if name == "title":
            item.title = _direct_text(child)
        elif name == "link":
            item.link = _direct_text(child)
        elif name == "description":
            item.description = _direct_text(child)
        elif name == "pubDate":
            item.pub_date = _direct_text(child)
    return item


def parse_feed(data: Union[bytes, str]) -> RSSFeed:
    """Parse an RSS document; raise ValueError if it is not well-formed XML."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise ValueError(f"invalid feed XML: {exc}") from exc

    feed = RSSFeed()
    for channel in root:
        if _local_name(channel.tag) != "channel":
            continue
        for child in channel:
            name = _local_name(child.tag)
            if name == "item":
                feed.items.append(_parse_item(child))
            elif name == "title":
                feed.title = _direct_text(child)
            elif name == "link":
                feed.link = _direct_text(child)
            elif name == "description":
                feed.description = _direct_text(child)
            elif name == "language":
                feed.language = _direct_text(child)
    return feed


def parse_pub_date(value: str) -> datetime:
    """Parse a date like ``Mon, 02 Jan 2006 15:04:05 -0700``."""
    match = _RFC1123Z.fullmatch(value)
    if match is None:
        raise ValueError(f"cannot parse {value!r} as an RFC 1123 date with numeric zone")
    if match["wday"].lower() not in _DAYS:
        raise ValueError(f"bad day name in {value!r}")
    month_name = match["mon"].lower()
    if month_name not in _MONTHS:
        raise ValueError(f"bad month name in {value!r}")
    offset = timedelta(hours=int(match["oh"]), minutes=int(match["om"]))
    if match["sign"] == "-":
        offset = -offset
    try:
        tz = timezone(offset)
        return datetime(
            int(match["year"]),
            _MONTHS.index(month_name) + 1,
            int(match["day"]),
            int(match["hour"]),
            int(match["minute"]),
            int(match["second"]),
            tzinfo=tz,
        )
    except ValueError as exc:
        raise ValueError(f"date out of range in {value!r}: {exc}") from exc


def fetch_feed(feed_url: str, timeout: float = 10.0) -> RSSFeed:
    """Download and parse a feed; the response status is not checked."""
    response = requests.get(feed_url, timeout=timeout)
    return parse_feed(response.content)


def _is_duplicate(exc: Exception) -> bool:
    message = str(getattr(exc, "orig", None) or exc).lower()
    return "duplicate key" in message or "unique constraint" in message


def scrape_feed(queries: Queries, feed: Feed) -> int:
    """Fetch one feed and store its new posts; return how many items it held."""
    try:
        queries.mark_feed_as_fetched(feed.id)
    except (SQLAlchemyError, LookupError) as exc:
        logger.warning("Couldn't mark feed %s fetched: %s", feed.name, exc)
        return 0

    try:
        feed_data = fetch_feed(feed.url)
    except (requests.RequestException, ValueError) as exc:
        logger.warning("Couldn't collect feed %s: %s", feed.name, exc)
        return 0

    for item in feed_data.items:
        try:
            published_at = parse_pub_date(item.pub_date)
        except ValueError as exc:
            logger.warning("couldn't parse date %s with err %s", item.pub_date, exc)
            published_at = _ZERO_TIME

        now = datetime.now(timezone.utc)
        try:
            queries.create_post(
                id=uuid.uuid4(),
                created_at=now,
                updated_at=now,
                title=item.title,
                url=item.link,
                description=item.description or None,
                published_at=published_at,
                feed_id=feed.id,
            )
        except SQLAlchemyError as exc:
            if _is_duplicate(exc):
                continue
            logger.warning("Failed to create post: %s", exc)

    logger.info("Feed %s collected, %d posts found", feed.name, len(feed_data.items))
    return len(feed_data.items)


def scrape_once(queries: Queries, concurrency: int) -> list[Feed]:
    """Scrape the feeds fetched longest ago, in parallel; return those feeds."""
    try:
        feeds = queries.get_next_feeds_to_fetch(concurrency)
    except SQLAlchemyError as exc:
        logger.warning("Couldn't get next feeds to fetch: %s", exc)
        return []
    logger.info("Found %d feeds to fetch!", len(feeds))

    if feeds:
        with ThreadPoolExecutor(max_workers=len(feeds)) as pool:
            list(pool.map(partial(scrape_feed, queries), feeds))
    return feeds


def start_scraping(
    queries: Queries,
    concurrency: int,
    interval: Union[float, timedelta],
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Scrape now and then on every tick of ``interval`` until ``stop_event`` is set."""
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    if seconds <= 0:
        raise ValueError("interval must be positive")
    stop = stop_event if stop_event is not None else threading.Event()

    logger.info("Collecting feeds every %ss on %d workers...", seconds, concurrency)
    next_tick = time.monotonic() + seconds
    while True:
        scrape_once(queries, concurrency)
        if stop.is_set():
            return
        now = time.monotonic()
        if now < next_tick:
            if stop.wait(next_tick - now):
                return
            next_tick += seconds
        else:
            # A tick was missed while scraping: run again at once, then keep the cadence.
            next_tick += seconds * (math.floor((now - next_tick) / seconds) + 1)