from __future__ import annotations

import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.riskdocs.audit import record_event
from app.riskdocs.db import db_session
from app.riskdocs.models import User
from app.riskdocs.security import ensure_csrf_token

bp = Blueprint("auth", __name__)


class LoginThrottle:
    """Failed-login counter per client address over a sliding window."""

    def __init__(self, limit: int = 5, window_seconds: int = 300):
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self._failures: dict[str, list[datetime]] = defaultdict(list)
        self._lock = threading.Lock()

    def blocked(self, key: str) -> bool:
        cutoff = datetime.utcnow() - self.window
        with self._lock:
            recent = [t for t in self._failures.get(key, ()) if t > cutoff]
            if recent:
                self._failures[key] = recent
            else:
                self._failures.pop(key, None)
            return len(recent) >= self.limit

    def failed(self, key: str) -> None:
        with self._lock:
            self._failures[key].append(datetime.utcnow())

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


throttle = LoginThrottle()


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id (for audit/log correlation); an
    inbound X-Request-Id is honoured so proxies can correlate.
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    user = db_session().get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


def _credentials() -> tuple[str, str]:
    data = request.get_json(silent=True) if request.is_json else request.form
    data = data or {}
    return (str(data.get("email") or "").strip().lower(), str(data.get("password") or ""))


def _user_view(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "roles": sorted(r.key for r in user.roles),
        "permissions": sorted(user.permission_keys),
    }


@bp.get("/csrf")
def csrf_token():
    return {"csrf_token": ensure_csrf_token()}


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if user is None:
        return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
    return {"user": _user_view(user)}


@bp.post("/login")
def login_post():
    email, password = _credentials()
    ip = request.remote_addr or "unknown"
    if throttle.blocked(ip):
        current_app.logger.warning("Login throttled ip=%s", ip)
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        throttle.failed(ip)
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        return jsonify({"error": "invalid_credentials", "message": "Invalid credentials."}), 401

    throttle.reset(ip)
    session["user_id"] = user.id
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return {"ok": True, "user": _user_view(user), "csrf_token": ensure_csrf_token()}


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    # A fresh token is minted on the next request.
    session.pop("csrf_token", None)
    return {"ok": True}
