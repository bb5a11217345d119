from __future__ import annotations

import hmac
import os
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple


ROLE_ORDER: Dict[str, int] = {
    "viewer": 0,
    "staff": 1,
    "admin": 2,
}


def _norm_role(role: Optional[str]) -> str:
    r = (role or "").strip().lower()
    return r if r in ROLE_ORDER else "viewer"


def is_auth_enabled() -> bool:
    """Auth is on only when at least one password is configured.

    Single-device installs with no passwords set keep working without a login.
    """
    return bool(
        (os.environ.get("WALLPAPER_ADMIN_PASSWORD") or "").strip()
        or (os.environ.get("WALLPAPER_STAFF_PASSWORD") or "").strip()
    )


def current_role(session: Dict[str, Any]) -> str:
    if not is_auth_enabled():
        return "admin"
    return _norm_role(session.get("stock_role"))


def current_user(session: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> str:
    """User id to record on orders and movements."""
    user = (session.get("stock_user") or "").strip()
    if not user and headers is not None:
        user = (headers.get("X-User-Id") or "").strip()
    return user or current_role(session)


def set_role(session: Dict[str, Any], role: str, user: Optional[str] = None) -> None:
    session["stock_role"] = _norm_role(role)
    if user:
        session["stock_user"] = user.strip()


def clear_role(session: Dict[str, Any]) -> None:
    session.pop("stock_role", None)
    session.pop("stock_user", None)


def check_password(password: str) -> Tuple[bool, str]:
    """Validate password against env vars.

    Returns (ok, role). Role is one of viewer/staff/admin.
    """
    pw = (password or "").strip()
    admin_pw = (os.environ.get("WALLPAPER_ADMIN_PASSWORD") or "").strip()
    staff_pw = (os.environ.get("WALLPAPER_STAFF_PASSWORD") or "").strip()

    if admin_pw and hmac.compare_digest(pw, admin_pw):
        return True, "admin"
    if staff_pw and hmac.compare_digest(pw, staff_pw):
        return True, "staff"
    return False, "viewer"


def has_role(session: Dict[str, Any], required: str) -> bool:
    have = ROLE_ORDER[current_role(session)]
    need = ROLE_ORDER[_norm_role(required)]
    return have >= need


def require_role(required: str, *, error_message: Optional[str] = None):
    """Flask route decorator: 401 JSON unless the session role is >= required."""

    def decorator(fn: Callable[..., Any]):
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any):
            from flask import jsonify, session

            if has_role(session, required):
                return fn(*args, **kwargs)

            status = 401 if current_role(session) == "viewer" else 403
            msg = error_message or ("Unauthorized" if status == 401 else "Forbidden")
            return (
                jsonify(
                    {
                        "error": msg,
                        "required_role": _norm_role(required),
                        "current_role": current_role(session),
                    }
                ),
                status,
            )

        return wrapper

    return decorator
