from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING, Any

from flask import abort, g, redirect, request, url_for

from app.chms.models import User

if TYPE_CHECKING:
    from app.chms.models import Role


def permission_keys(user: User | None) -> set[str]:
    if not user or not user.is_active:
        return set()
    return {p.key for role in user.roles for p in role.permissions}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    return permission_key in permission_keys(user)


def _login_redirect():
    # full_path carries a bare "?" when there is no query string
    nxt = (request.full_path or request.path).rstrip("?")
    return redirect(url_for("auth.login_get", next=nxt))


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Anonymous users go to the login page; signed-in users lacking the permission get 403."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return _login_redirect()
            # accounts outside any organization have no tenant pages
            if user.organization_id is None:
                abort(403)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def seed_roles_and_permissions(s) -> dict[str, Role]:
    """
    Idempotently create the permission catalog and the built-in roles.
    Returns roles keyed by role key. Caller commits.
    """
    from app.chms.constants import PERMISSIONS, ROLES
    from app.chms.models import Permission, Role

    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSIONS:
        if key not in perms:
            p = Permission(key=key, name=name)
            s.add(p)
            perms[key] = p

    roles: dict[str, Role] = {r.key: r for r in s.query(Role).all()}
    for role_key, (role_name, perm_keys) in ROLES.items():
        role = roles.get(role_key)
        if role is None:
            role = Role(key=role_key, name=role_name)
            s.add(role)
            roles[role_key] = role
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
    s.flush()
    return roles
