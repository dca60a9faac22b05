"""Extraction of API keys from request headers."""

from __future__ import annotations

from collections.abc import Mapping

_HEADER_NAME = "Authorization"
_SCHEME = "ApiKey"


class AuthError(ValueError):
    """Raised when a request carries no usable authentication information."""


def _header_value(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        wanted = name.lower()
        value = next(
            (val for key, val in headers.items() if key.lower() == wanted),
            None,
        )
    return value or ""


def get_api_key(headers: Mapping[str, str]) -> str:
    """Return the key from an ``Authorization: ApiKey <key>`` header.

    Header names are matched case-insensitively.
    """
    header = _header_value(headers, _HEADER_NAME)
    if not header:
        raise AuthError("No authentication info found")

    values = header.split(" ")
    if len(values) != 2 or values[0] != _SCHEME:
        raise AuthError("Malformed auth header")

    return values[1]