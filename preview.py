from __future__ import annotations

from typing import Any, Iterable
from urllib.parse import urlsplit

from itsdangerous import BadSignature, URLSafeTimedSerializer

from auth import is_local_path
from errors import PreviewRedirectError

PREVIEW_COOKIE = "known_preview"
_SALT = "known-preview"


def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt=_SALT)


def validate_preview_route(route: str | None, allowed_prefixes: Iterable[str]) -> str:
    """Return ``route`` if it is a same-origin path under an allowed prefix."""
    if not is_local_path(route):
        raise PreviewRedirectError(route, "route must be a same-origin absolute path")
    path = urlsplit(route).path
    for prefix in allowed_prefixes:
        base = prefix.rstrip("/")
        if path == base or path.startswith(base + "/"):
            return route
    raise PreviewRedirectError(route, "route is not previewable")


def enable_preview(response, secret_key: str, max_age: int, data: dict[str, Any] | None = None):
    token = _serializer(secret_key).dumps(data or {})
    response.set_cookie(PREVIEW_COOKIE, token, max_age=max_age, httponly=True, samesite="Lax")
    return response


def clear_preview(response):
    response.delete_cookie(PREVIEW_COOKIE)
    return response


def preview_data(cookies, secret_key: str, max_age: int) -> dict[str, Any] | None:
    token = cookies.get(PREVIEW_COOKIE)
    if not token:
        return None
    try:
        data = _serializer(secret_key).loads(token, max_age=max_age)
    except BadSignature:
        return None
    return data if isinstance(data, dict) else {}


def is_preview(cookies, secret_key: str, max_age: int) -> bool:
    return preview_data(cookies, secret_key, max_age) is not None
