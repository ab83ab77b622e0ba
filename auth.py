from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from flask import session as flask_session
from sqlalchemy.exc import SQLAlchemyError

from store import Database, User, get_user

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"


@dataclass(frozen=True)
class Session:
    user: User

    def to_dict(self) -> dict[str, Any]:
        return {"user": self.user.to_dict()}


def get_session(db: Database) -> Session | None:
    """Return the signed-in user's session, or None.

    A cookie whose user no longer exists, or a lookup that fails, is
    reported the same way as no cookie at all.
    """
    user_id = flask_session.get(SESSION_USER_KEY)
    if not user_id or not isinstance(user_id, str):
        return None
    try:
        user = get_user(db, user_id)
    except SQLAlchemyError as e:
        logger.warning("session lookup failed for %s: %s", user_id, e)
        return None
    if user is None:
        return None
    return Session(user=user)


def sign_in(user: User) -> None:
    flask_session.clear()
    flask_session[SESSION_USER_KEY] = user.id
    flask_session.permanent = True


def sign_out() -> None:
    flask_session.clear()


def is_local_path(target: str | None) -> bool:
    if not target or not target.startswith("/"):
        return False
    if target.startswith("//") or "\\" in target:
        return False
    if any(ord(ch) < 32 for ch in target):
        return False
    parts = urlsplit(target)
    return not parts.scheme and not parts.netloc
