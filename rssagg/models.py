"""Public representations of stored records, as served by the API."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from rssagg import database


def _format_time(value: datetime) -> str:
    """Format a timestamp as RFC 3339 with trailing fraction zeros removed."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "+" if offset > timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    hours, minutes = divmod(minutes, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


@dataclass(frozen=True)
class User:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    name: str
    api_key: str

    @classmethod
    def from_db(cls, db_user: database.User) -> "User":
        return cls(
            id=db_user.id,
            created_at=db_user.created_at,
            updated_at=db_user.updated_at,
            name=db_user.name,
            api_key=db_user.api_key,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "name": self.name,
            "api_key": self.api_key,
        }


@dataclass(frozen=True)
class Feed:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    name: str
    url: str
    user_id: uuid.UUID

    @classmethod
    def from_db(cls, db_feed: database.Feed) -> "Feed":
        return cls(
            id=db_feed.id,
            created_at=db_feed.created_at,
            updated_at=db_feed.updated_at,
            name=db_feed.name,
            url=db_feed.url,
            user_id=db_feed.user_id,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "name": self.name,
            "url": self.url,
            "user_id": str(self.user_id),
        }


@dataclass(frozen=True)
class FeedsFollow:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    user_id: uuid.UUID
    feed_id: uuid.UUID

    @classmethod
    def from_db(cls, db_feed_follow: database.FeedsFollow) -> "FeedsFollow":
        return cls(
            id=db_feed_follow.id,
            created_at=db_feed_follow.created_at,
            updated_at=db_feed_follow.updated_at,
            user_id=db_feed_follow.user_id,
            feed_id=db_feed_follow.feed_id,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "user_id": str(self.user_id),
            "feed_id": str(self.feed_id),
        }


@dataclass(frozen=True)
class Post:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    title: str
    description: Optional[str]
    published_at: datetime
    url: str
    feed_id: uuid.UUID

    @classmethod
    def from_db(cls, db_post: database.Post) -> "Post":
        return cls(
            id=db_post.id,
            created_at=db_post.created_at,
            updated_at=db_post.updated_at,
            title=db_post.title,
            description=db_post.description,
            published_at=db_post.published_at,
            url=db_post.url,
            feed_id=db_post.feed_id,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "title": self.title,
            "description": self.description,
            "published_at": _format_time(self.published_at),
            "url": self.url,
            "feed_id": str(self.feed_id),
        }