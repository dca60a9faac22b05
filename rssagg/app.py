"""HTTP API for users, feeds, feed follows and posts."""

from __future__ import annotations

import argparse
import functools
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from dotenv import load_dotenv
from flask import Blueprint, Flask, Response, request
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from rssagg import models
from rssagg.auth import AuthError, get_api_key
from rssagg.database import Queries, User, create_schema
from rssagg.scraper import start_scraping

logger = logging.getLogger(__name__)

_POSTS_LIMIT = 10
_SCRAPE_CONCURRENCY = 10
_SCRAPE_INTERVAL = timedelta(minutes=1)

_CORS_ALLOWED_ORIGIN_PREFIXES = ("https://", "http://")
_CORS_ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "OPTIONS"})
_CORS_EXPOSED_HEADERS = "Link"
_CORS_MAX_AGE = 300

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}

_NIL_UUID = uuid.UUID(int=0)


class _BodyError(ValueError):
    """Raised when a request body cannot be decoded into the expected fields."""


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_json"):
        return value.to_json()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    return value


def _encode(payload: Any) -> str:
    text = json.dumps(
        _jsonable(payload),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    for char, escape in _JSON_ESCAPES.items():
        text = text.replace(char, escape)
    return text


def respond_with_json(status: int, payload: Any) -> Response:
    """Build a JSON response; a payload that cannot be encoded gives an empty 500."""
    try:
        body = _encode(payload)
    except (TypeError, ValueError):
        logger.error("Failed to marshal JSON response: %r", payload)
        return Response(status=500)
    return Response(body, status=status, content_type="application/json")


def respond_with_error(status: int, message: str) -> Response:
    """Build a JSON error response of the form ``{"error": message}``."""
    if status >= 500:
        logger.error("Responding with 5XX error: %s", message)
    return respond_with_json(status, {"error": message})


def _decode_object(raw: bytes) -> dict[str, Any]:
    text = raw.decode("utf-8", errors="replace").lstrip()
    if not text:
        raise _BodyError("EOF")
    try:
        value, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as exc:
        raise _BodyError(str(exc)) from exc
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _BodyError(f"cannot unmarshal {type(value).__name__} into an object")
    return value


def _string_field(body: dict[str, Any], name: str) -> str:
    value = body.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise _BodyError(
            f"cannot unmarshal {type(value).__name__} into field {name} of type string"
        )
    return value


def _uuid_field(body: dict[str, Any], name: str) -> uuid.UUID:
    value = body.get(name)
    if value is None:
        return _NIL_UUID
    if not isinstance(value, str):
        raise _BodyError(
            f"cannot unmarshal {type(value).__name__} into field {name} of type UUID"
        )
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise _BodyError(f"invalid UUID {value!r}: {exc}") from exc


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _origin_allowed(origin: str) -> bool:
    return origin.lower().startswith(_CORS_ALLOWED_ORIGIN_PREFIXES)


def _install_cors(app: Flask) -> None:
    @app.before_request
    def _preflight() -> Optional[Response]:
        if request.method != "OPTIONS":
            return None
        requested_method = request.headers.get("Access-Control-Request-Method")
        if not requested_method:
            return None
        response = Response(status=200)
        response.headers.add("Vary", "Origin")
        response.headers.add("Vary", "Access-Control-Request-Method")
        response.headers.add("Vary", "Access-Control-Request-Headers")
        origin = request.headers.get("Origin", "")
        if not origin or not _origin_allowed(origin):
            return response
        method = requested_method.upper()
        if method not in _CORS_ALLOWED_METHODS:
            return response
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = method
        requested_headers = request.headers.get("Access-Control-Request-Headers")
        if requested_headers:
            response.headers["Access-Control-Allow-Headers"] = requested_headers
        response.headers["Access-Control-Max-Age"] = str(_CORS_MAX_AGE)
        return response

    @app.after_request
    def _actual(response: Response) -> Response:
        if request.method == "OPTIONS" and request.headers.get(
            "Access-Control-Request-Method"
        ):
            return response
        response.headers.add("Vary", "Origin")
        origin = request.headers.get("Origin", "")
        if not origin or not _origin_allowed(origin):
            return response
        if request.method.upper() not in _CORS_ALLOWED_METHODS:
            return response
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Expose-Headers"] = _CORS_EXPOSED_HEADERS
        return response


def _authenticated(queries: Queries) -> Callable:
    def decorator(handler: Callable[..., Response]) -> Callable[..., Response]:
        @functools.wraps(handler)
        def wrapper(*args: Any, **kwargs: Any) -> Response:
            try:
                api_key = get_api_key(request.headers)
            except AuthError as exc:
                return respond_with_error(403, f"Invalid auth info: {exc}")
            try:
                user = queries.get_user_by_api_key(api_key)
            except (LookupError, SQLAlchemyError) as exc:
                return respond_with_error(404, f"Error while fetching user : {exc}")
            return handler(user, *args, **kwargs)

        return wrapper

    return decorator


def _v1_routes(queries: Queries) -> Blueprint:
    v1 = Blueprint("v1", __name__, url_prefix="/v1")
    authed = _authenticated(queries)

    @v1.get("/healthz")
    def readiness() -> Response:
        return respond_with_json(200, {})

    @v1.get("/err")
    def error() -> Response:
        return respond_with_error(400, "Something Went wrong")

    @v1.post("/users")
    def create_user() -> Response:
        try:
            body = _decode_object(request.get_data())
            name = _string_field(body, "name")
        except _BodyError as exc:
            return respond_with_error(400, f"Error while parsing json: {exc}")
        now = _now()
        try:
            user = queries.create_user(
                id=uuid.uuid4(), created_at=now, updated_at=now, name=name
            )
        except SQLAlchemyError as exc:
            return respond_with_error(400, f"Error Creating user: {exc}")
        return respond_with_json(201, models.User.from_db(user))

    @v1.get("/users")
    @authed
    def get_user_by_api_key(user: User) -> Response:
        return respond_with_json(200, models.User.from_db(user))

    @v1.post("/feeds")
    @authed
    def create_feed(user: User) -> Response:
        try:
            body = _decode_object(request.get_data())
            name = _string_field(body, "name")
            url = _string_field(body, "url")
        except _BodyError as exc:
            return respond_with_error(400, f"Error while parsing json: {exc}")
        now = _now()
        try:
            feed = queries.create_feed(
                id=uuid.uuid4(),
                created_at=now,
                updated_at=now,
                name=name,
                url=url,
                user_id=user.id,
            )
        except SQLAlchemyError as exc:
            return respond_with_error(400, f"Error Creating feed: {exc}")
        return respond_with_json(201, models.Feed.from_db(feed))

    @v1.get("/feeds")
    def get_feeds() -> Response:
        try:
            feeds = queries.get_feeds()
        except SQLAlchemyError as exc:
            return respond_with_error(400, f"Error while fetching feeds: {exc}")
        return respond_with_json(200, [models.Feed.from_db(feed) for feed in feeds])

    @v1.get("/posts")
    @authed
    def get_posts_for_user(user: User) -> Response:
        try:
            posts = queries.get_posts_for_user(user_id=user.id, limit=_POSTS_LIMIT)
        except SQLAlchemyError as exc:
            return respond_with_error(400, f"Couldn't get posts: {exc}")
        return respond_with_json(200, [models.Post.from_db(post) for post in posts])

    @v1.post("/feeds_follow")
    @authed
    def create_feed_follow(user: User) -> Response:
        try:
            body = _decode_object(request.get_data())
            feed_id = _uuid_field(body, "feed_id")
        except _BodyError as exc:
            return respond_with_error(400, f"Error while decoding json: {exc}")
        now = _now()
        try:
            follow = queries.create_feed_follow(
                id=uuid.uuid4(),
                created_at=now,
                updated_at=now,
                user_id=user.id,
                feed_id=feed_id,
            )
        except SQLAlchemyError as exc:
            return respond_with_error(400, f"Error while creating feed_follow : {exc}")
        return respond_with_json(200, models.FeedsFollow.from_db(follow))

    @v1.get("/feeds_follow")
    @authed
    def get_feed_follows(user: User) -> Response:
        try:
            follows = queries.get_feed_follows_of_user(user.id)
        except SQLAlchemyError as exc:
            return respond_with_error(
                400, f"Error while getting user feed_follows : {exc}"
            )
        return respond_with_json(
            200, [models.FeedsFollow.from_db(follow) for follow in follows]
        )

    @v1.delete("/feeds_follow/<feed_follow_id>")
    @authed
    def delete_feed_follows(user: User, feed_follow_id: str) -> Response:
        try:
            follow_id = uuid.UUID(feed_follow_id)
        except ValueError as exc:
            return respond_with_error(400, f"Error while parsing feedFollowId: {exc}")
        try:
            queries.delete_feed_follows(user_id=user.id, id=follow_id)
        except SQLAlchemyError as exc:
            return respond_with_error(
                400, f"Error while deleting user feed_follows : {exc}"
            )
        return respond_with_json(200, follow_id)

    return v1


def create_app(queries: Queries) -> Flask:
    """Build the web application serving the API under ``/v1``."""
    app = Flask(__name__)
    _install_cors(app)
    app.register_blueprint(_v1_routes(queries))
    return app


def _fatal(message: str) -> None:
    logger.critical(message)
    raise SystemExit(1)


def _normalise_dsn(dsn: str) -> str:
    if dsn.startswith("postgres://"):
        return "postgresql://" + dsn[len("postgres://"):]
    return dsn


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Serve the API on $PORT against the database at $CONNECTION_STRING."""
    parser = argparse.ArgumentParser(
        prog="rssagg",
        description="RSS aggregator API server. Reads PORT and CONNECTION_STRING "
        "from the environment or a .env file.",
    )
    parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    load_dotenv(".env")

    port = os.environ.get("PORT", "")
    if not port:
        _fatal("PORT is not found in environment variables")
    try:
        port_number = int(port)
    except ValueError:
        _fatal(f"PORT is not a number: {port}")

    connection_string = os.environ.get("CONNECTION_STRING", "")
    if not connection_string:
        _fatal("CONNECTION_STRING is not found in environment variables")

    try:
        engine = create_engine(_normalise_dsn(connection_string))
        create_schema(engine)
    except (SQLAlchemyError, ImportError):
        _fatal("Can't connect to database")

    queries = Queries(engine)
    scraper = threading.Thread(
        target=start_scraping,
        args=(queries, _SCRAPE_CONCURRENCY, _SCRAPE_INTERVAL),
        name="scraper",
        daemon=True,
    )
    scraper.start()

    app = create_app(queries)
    print(f"Server starting on port {port}", flush=True)
    try:
        app.run(host="0.0.0.0", port=port_number)
    except OSError as exc:
        _fatal(str(exc))


if __name__ == "__main__":
    main()