import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import requests
import responses
from sqlalchemy import create_engine

from rssagg.database import Queries, create_schema
from rssagg.scraper import (
    RSSFeed,
    RSSItem,
    fetch_feed,
    parse_feed,
    parse_pub_date,
    scrape_feed,
    scrape_once,
    start_scraping,
)

FEED_URL = "http://example.com/feed.xml"

SAMPLE_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
<channel>
<title>Example Blog</title>
<link>http://example.com/</link>
<description>Posts from an example blog</description>
<language>en-us</language>
<item><title>First post</title><link>http://example.com/first</link><description>Hello</description><pubDate>Mon, 02 Jan 2006 15:04:05 -0700</pubDate></item>
<item><title>Second post</title><link>http://example.com/second</link><description></description><pubDate>Tue, 03 Jan 2006 10:00:00 +0000</pubDate></item>
</channel>
</rss>"""

BAD_DATE_RSS = b"""<rss><channel><title>T</title>
<item><title>Undated</title><link>http://example.com/undated</link><pubDate>yesterday</pubDate></item>
</channel></rss>"""


def _now():
    return datetime.now(timezone.utc)


@pytest.fixture
def queries(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'rss.db'}")
    create_schema(engine)
    yield Queries(engine)
    engine.dispose()


@pytest.fixture
def user(queries):
    return queries.create_user(uuid.uuid4(), _now(), _now(), "alice")


def _feed(queries, user, url=FEED_URL, name="blog"):
    return queries.create_feed(uuid.uuid4(), _now(), _now(), name, url, user.id)


def _follow(queries, user, feed):
    queries.create_feed_follow(uuid.uuid4(), _now(), _now(), user.id, feed.id)


def test_parse_feed_reads_channel_and_items():
    feed = parse_feed(SAMPLE_RSS)
    assert feed.title == "Example Blog"
    assert feed.link == "http://example.com/"
    assert feed.language == "en-us"
    assert [item.title for item in feed.items] == ["First post", "Second post"]
    assert feed.items[0] == RSSItem(
        title="First post",
        link="http://example.com/first",
        description="Hello",
        pub_date="Mon, 02 Jan 2006 15:04:05 -0700",
    )
    assert feed.items[1].description == ""


def test_parse_feed_without_channel_is_empty():
    assert parse_feed(b"<rss version='2.0'></rss>") == RSSFeed()


def test_parse_feed_matches_local_names():
    doc = b"<rss xmlns:ex='http://example.com/ns'><channel><ex:item><title>A</title></ex:item></channel></rss>"
    feed = parse_feed(doc)
    assert [item.title for item in feed.items] == ["A"]


@pytest.mark.parametrize("data", [b"", b"<rss><channel>", b"not xml at all"])
def test_parse_feed_rejects_malformed(data):
    with pytest.raises(ValueError):
        parse_feed(data)


def test_parse_pub_date_layout():
    parsed = parse_pub_date("Mon, 02 Jan 2006 15:04:05 -0700")
    assert parsed == datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone(timedelta(hours=-7)))
    assert parsed.utcoffset() == timedelta(hours=-7)


@pytest.mark.parametrize(
    "value",
    [
        "2006-01-02T15:04:05Z",
        "Mon, 02 Jan 2006 15:04:05 GMT",
        "Mon, 02 Foo 2006 15:04:05 -0700",
        "Mon, 32 Jan 2006 15:04:05 -0700",
        "",
    ],
)
def test_parse_pub_date_rejects(value):
    with pytest.raises(ValueError):
        parse_pub_date(value)


def test_fetch_feed_ignores_status():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=SAMPLE_RSS, status=500)
        feed = fetch_feed(FEED_URL)
    assert len(feed.items) == 2


def test_fetch_feed_invalid_body():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=b"<html>")
        with pytest.raises(ValueError):
            fetch_feed(FEED_URL)


def test_scrape_feed_stores_posts(queries, user):
    feed = _feed(queries, user)
    _follow(queries, user, feed)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=SAMPLE_RSS)
        count = scrape_feed(queries, feed)
    assert count == 2

    posts = queries.get_posts_for_user(user.id, 10)
    assert [post.title for post in posts] == ["Second post", "First post"]
    assert posts[0].description is None
    assert posts[1].description == "Hello"
    assert posts[1].published_at == parse_pub_date("Mon, 02 Jan 2006 15:04:05 -0700")
    assert queries.get_feeds()[0].last_fetched_at is not None


def test_scrape_feed_twice_skips_duplicates(queries, user):
    feed = _feed(queries, user)
    _follow(queries, user, feed)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=SAMPLE_RSS)
        scrape_feed(queries, feed)
        assert scrape_feed(queries, feed) == 2
    assert len(queries.get_posts_for_user(user.id, 10)) == 2


def test_scrape_feed_bad_date_uses_zero_time(queries, user):
    feed = _feed(queries, user)
    _follow(queries, user, feed)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=BAD_DATE_RSS)
        scrape_feed(queries, feed)
    posts = queries.get_posts_for_user(user.id, 10)
    assert [post.title for post in posts] == ["Undated"]
    assert posts[0].published_at == datetime(1, 1, 1, tzinfo=timezone.utc)


def test_scrape_feed_fetch_error_marks_fetched(queries, user):
    feed = _feed(queries, user)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=requests.ConnectionError("down"))
        assert scrape_feed(queries, feed) == 0
    assert queries.get_feeds()[0].last_fetched_at is not None


def test_scrape_feed_unknown_feed_is_not_fetched(queries, user):
    feed = _feed(queries, user)
    ghost = type(feed)(
        id=uuid.uuid4(), created_at=feed.created_at, updated_at=feed.updated_at,
        name="ghost", url=FEED_URL, user_id=user.id,
    )
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, FEED_URL, body=SAMPLE_RSS)
        assert scrape_feed(queries, ghost) == 0
        assert len(rsps.calls) == 0


def test_scrape_once_respects_concurrency(queries, user):
    first = _feed(queries, user, "http://example.com/a.xml", "a")
    second = _feed(queries, user, "http://example.com/b.xml", "b")
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, first.url, body=b"<rss><channel></channel></rss>")
        rsps.add(responses.GET, second.url, body=b"<rss><channel></channel></rss>")
        done = scrape_once(queries, 1)
        assert len(done) == 1
        rest = scrape_once(queries, 1)
    assert {done[0].id, rest[0].id} == {first.id, second.id}
    assert all(feed.last_fetched_at is not None for feed in queries.get_feeds())


def test_scrape_once_runs_all_feeds(queries, user):
    urls = ["http://example.com/a.xml", "http://example.com/b.xml"]
    for index, url in enumerate(urls):
        _feed(queries, user, url, f"feed{index}")
    with responses.RequestsMock() as rsps:
        for url in urls:
            rsps.add(responses.GET, url, body=b"<rss><channel></channel></rss>")
        done = scrape_once(queries, 10)
    assert sorted(feed.url for feed in done) == urls


def test_start_scraping_stops_when_event_set(queries, user):
    feed = _feed(queries, user)
    _follow(queries, user, feed)
    stop = threading.Event()
    stop.set()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, FEED_URL, body=SAMPLE_RSS)
        start_scraping(queries, 10, 60, stop)
        assert len(rsps.calls) == 1
    posts = queries.get_posts_for_user(user.id, 10)
    assert [post.title for post in posts] == ["Second post", "First post"]
    assert [f.id for f in queries.get_next_feeds_to_fetch(10)] == [feed.id]


@pytest.mark.parametrize("interval", [0, -1, timedelta(0)])
def test_start_scraping_rejects_non_positive_interval(queries, interval):
    with pytest.raises(ValueError):
        start_scraping(queries, 10, interval, threading.Event())