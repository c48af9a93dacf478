from __future__ import annotations

from functools import wraps
from typing import Any

from flask import jsonify, session as flask_session

from ..app import db
from ..models import Event, User

ORGANIZER_ROLES = ("organizer", "admin")
CHECKIN_ROLES = ("organizer", "staff", "admin")


def is_admin(user: Any) -> bool:
    return bool(user and user.is_admin)


def is_organizer(user: Any) -> bool:
    return bool(user and user.role in ORGANIZER_ROLES)


def can_check_in(user: Any) -> bool:
    return bool(user and user.role in CHECKIN_ROLES)


def organizes_event(user: Any, event: Event) -> bool:
    """Return True when ``user`` may manage certificates for ``event``."""

    if not user or not event:
        return False
    return is_admin(user) or event.organizer_id == user.id


def _deny(status: int, error: str, message: str):
    return jsonify({"success": False, "error": error, "message": message}), status


def _role_required(check):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user_id = flask_session.get("user_id")
            if not user_id:
                return _deny(401, "unauthorized", "Authentication required")
            user = db.session.get(User, user_id)
            if not user:
                return _deny(401, "unauthorized", "Authentication required")
            if not check(user):
                return _deny(403, "forbidden", "Insufficient permissions")
            return fn(*args, **kwargs, current_user=user)

        return wrapper

    return decorator


organizer_required = _role_required(is_organizer)
checkin_required = _role_required(can_check_in)
