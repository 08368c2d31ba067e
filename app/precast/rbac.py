from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify

from app.precast.models import User


def permission_keys(user: User | None) -> set[str]:
    """Union of permission keys over the user's roles; empty for anonymous or inactive users."""
    if not user or not user.is_active:
        return set()
    return {perm.key for role in user.roles for perm in role.permissions}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # API clients get a 401 body instead of a login redirect.
            if not user or not user.is_active:
                return jsonify({"error": "unauthorized", "message": "Login required."}), 401
            if not user_has_permission(user, permission_key):
                # Picked up by the 403 handler for the response body and the log line.
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
