"""Storage of users, feeds, feed follows and posts."""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine


class NoRowsError(LookupError):
    """Raised when a query that must return one row finds none."""

    def __init__(self, message: str = "no rows in result set") -> None:
        super().__init__(message)


def _new_api_key() -> str:
    return secrets.token_hex(32)


_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Uuid, primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("name", Text, nullable=False),
    Column("api_key", String(64), nullable=False, unique=True, default=_new_api_key),
)

_feeds = Table(
    "feeds",
    _metadata,
    Column("id", Uuid, primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("name", Text, nullable=False),
    Column("url", Text, nullable=False, unique=True),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("last_fetched_at", DateTime(timezone=True), nullable=True),
)

_feeds_follows = Table(
    "feeds_follows",
    _metadata,
    Column("id", Uuid, primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("feed_id", Uuid, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("user_id", "feed_id"),
)

_posts = Table(
    "posts",
    _metadata,
    Column("id", Uuid, primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text, nullable=True),
    Column("published_at", DateTime(timezone=True), nullable=False),
    Column("url", Text, nullable=False, unique=True),
    Column("feed_id", Uuid, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False),
)


def create_schema(engine: Engine) -> None:
    """Create every table that does not exist yet."""
    _metadata.create_all(engine)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    return None if value is None else _to_utc(value)


@dataclass(frozen=True)
class User:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    name: str
    api_key: str

    @classmethod
    def _from_row(cls, row) -> "User":
        m = row._mapping
        return cls(
            id=m["id"],
            created_at=_from_db_time(m["created_at"]),
            updated_at=_from_db_time(m["updated_at"]),
            name=m["name"],
            api_key=m["api_key"],
        )


@dataclass(frozen=True)
class Feed:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    name: str
    url: str
    user_id: uuid.UUID
    last_fetched_at: Optional[datetime] = None

    @classmethod
    def _from_row(cls, row) -> "Feed":
        m = row._mapping
        return cls(
            id=m["id"],
            created_at=_from_db_time(m["created_at"]),
            updated_at=_from_db_time(m["updated_at"]),
            name=m["name"],
            url=m["url"],
            user_id=m["user_id"],
            last_fetched_at=_from_db_time(m["last_fetched_at"]),
        )


@dataclass(frozen=True)
class FeedsFollow:
    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    user_id: uuid.UUID
    feed_id: uuid.UUID

    @classmethod
    def _from_row(cls, row) -> "FeedsFollow":
        m = row._mapping
        return cls(
            id=m["id"],
            created_at=_from_db_time(m["created_at"]),
            updated_at=_from_db_time(m["updated_at"]),
            user_id=m["user_id"],
            feed_id=m["feed_id"],
        )


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
    def _from_row(cls, row) -> "Post":
        m = row._mapping
        return cls(
            id=m["id"],
            created_at=_from_db_time(m["created_at"]),
            updated_at=_from_db_time(m["updated_at"]),
            title=m["title"],
            description=m["description"],
            published_at=_from_db_time(m["published_at"]),
            url=m["url"],
            feed_id=m["feed_id"],
        )


class Queries:
    """The queries the service runs, bound to an engine or a connection."""

    def __init__(self, bind: Union[Engine, Connection]) -> None:
        self._bind = bind

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if isinstance(self._bind, Connection):
            yield self._bind
        else:
            with self._bind.begin() as conn:
                yield conn

    @contextmanager
    def transaction(self) -> Iterator["Queries"]:
        """Yield queries that run in one transaction, rolled back on error."""
        if isinstance(self._bind, Connection):
            conn = self._bind
            begin = conn.begin_nested() if conn.in_transaction() else conn.begin()
            with begin:
                yield Queries(conn)
        else:
            with self._bind.begin() as conn:
                yield Queries(conn)

    # users

    def create_user(self, id, created_at, updated_at, name) -> User:
        with self._connection() as conn:
            conn.execute(
                insert(_users).values(
                    id=id,
                    created_at=_to_utc(created_at),
                    updated_at=_to_utc(updated_at),
                    name=name,
                )
            )
            row = conn.execute(select(_users).where(_users.c.id == id)).one()
        return User._from_row(row)

    def get_user_by_api_key(self, api_key) -> User:
        with self._connection() as conn:
            row = conn.execute(select(_users).where(_users.c.api_key == api_key)).first()
        if row is None:
            raise NoRowsError()
        return User._from_row(row)

    # feeds

    def create_feed(self, id, created_at, updated_at, name, url, user_id) -> Feed:
        with self._connection() as conn:
            conn.execute(
                insert(_feeds).values(
                    id=id,
                    created_at=_to_utc(created_at),
                    updated_at=_to_utc(updated_at),
                    name=name,
                    url=url,
                    user_id=user_id,
                )
            )
            row = conn.execute(select(_feeds).where(_feeds.c.id == id)).one()
        return Feed._from_row(row)

    def get_feeds(self) -> list[Feed]:
        with self._connection() as conn:
            rows = conn.execute(select(_feeds)).all()
        return [Feed._from_row(row) for row in rows]

    def get_next_feeds_to_fetch(self, limit) -> list[Feed]:
        stmt = (
            select(_feeds)
            .order_by(_feeds.c.last_fetched_at.asc().nulls_first())
            .limit(limit)
        )
        with self._connection() as conn:
            rows = conn.execute(stmt).all()
        return [Feed._from_row(row) for row in rows]

    def mark_feed_as_fetched(self, id) -> Feed:
        now = datetime.now(timezone.utc)
        with self._connection() as conn:
            conn.execute(
                update(_feeds)
                .where(_feeds.c.id == id)
                .values(last_fetched_at=now, updated_at=now)
            )
            row = conn.execute(select(_feeds).where(_feeds.c.id == id)).first()
        if row is None:
            raise NoRowsError()
        return Feed._from_row(row)

    # feed follows

    def create_feed_follow(self, id, created_at, updated_at, user_id, feed_id) -> FeedsFollow:
        with self._connection() as conn:
            conn.execute(
                insert(_feeds_follows).values(
                    id=id,
                    created_at=_to_utc(created_at),
                    updated_at=_to_utc(updated_at),
                    user_id=user_id,
                    feed_id=feed_id,
                )
            )
            row = conn.execute(
                select(_feeds_follows).where(_feeds_follows.c.id == id)
            ).one()
        return FeedsFollow._from_row(row)

    def get_feed_follows_of_user(self, user_id) -> list[FeedsFollow]:
        stmt = select(_feeds_follows).where(_feeds_follows.c.user_id == user_id)
        with self._connection() as conn:
            rows = conn.execute(stmt).all()
        return [FeedsFollow._from_row(row) for row in rows]

    def delete_feed_follows(self, user_id, id) -> None:
        with self._connection() as conn:
            conn.execute(
                delete(_feeds_follows).where(
                    _feeds_follows.c.user_id == user_id,
                    _feeds_follows.c.id == id,
                )
            )

    # posts

    def create_post(
        self, id, created_at, updated_at, title, url, description, published_at, feed_id
    ) -> Post:
        with self._connection() as conn:
            conn.execute(
                insert(_posts).values(
                    id=id,
                    created_at=_to_utc(created_at),
                    updated_at=_to_utc(updated_at),
                    title=title,
                    url=url,
                    description=description,
                    published_at=_to_utc(published_at),
                    feed_id=feed_id,
                )
            )
            row = conn.execute(select(_posts).where(_posts.c.id == id)).one()
        return Post._from_row(row)

    def get_posts_for_user(self, user_id, limit) -> list[Post]:
        stmt = (
            select(_posts)
            .join(_feeds_follows, _feeds_follows.c.feed_id == _posts.c.feed_id)
            .where(_feeds_follows.c.user_id == user_id)
            .order_by(_posts.c.published_at.desc())
            .limit(limit)
        )
        with self._connection() as conn:
            rows = conn.execute(stmt).all()
        return [Post._from_row(row) for row in rows]