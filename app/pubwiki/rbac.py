from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.pubwiki.models import User


def user_permission_keys(user: User | None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    return frozenset(perm.key for role in user.roles for perm in role.permissions)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in user_permission_keys(user)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401, authenticated but unauthorized -> 403
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
