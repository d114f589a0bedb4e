from collections.abc import Callable, Iterable
from functools import wraps
from typing import Any

from flask import abort, g

from app.riskdocs.models import User

# Lifecycle action -> permission a user needs to request it.
ACTION_PERMISSIONS: dict[str, str] = {
    "request_approval": "docs.edit",
    "recall": "docs.edit",
    "edit": "docs.edit",
    "approve": "docs.approve",
    "reject": "docs.approve",
    "issue": "docs.issue",
    "create_next_version": "docs.revise",
}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in user.permission_keys


def permitted_actions(user: User | None, actions: Iterable[str]) -> list[str]:
    """Subset of ``actions`` the user holds the permission for, order preserved."""
    if not user or not user.is_active:
        return []
    keys = user.permission_keys
    return [a for a in actions if ACTION_PERMISSIONS.get(a) in keys]


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # API clients authenticate via /auth/login; no redirect.
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
