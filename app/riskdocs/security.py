import secrets

from flask import Flask, Request, jsonify, request, session

CSRF_HEADER = "X-CSRF-Token"
_UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
# Probes never touch the session; login/logout mint or drop it.
_EXEMPT_PATHS = ("/health", "/healthz")
_EXEMPT_ENDPOINT_PREFIXES = ("auth.",)


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header, form, or JSON body."""
    token = req.headers.get(CSRF_HEADER) or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def install_csrf_guard(app: Flask) -> None:
    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_EXEMPT_PATHS):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method not in _UNSAFE_METHODS:
            return None
        if (request.endpoint or "").startswith(_EXEMPT_ENDPOINT_PREFIXES):
            return None
        if not validate_csrf(request):
            app.logger.warning("CSRF check failed method=%s path=%s", request.method, request.path)
            return jsonify({"error": "csrf_failed", "message": "CSRF token missing or invalid."}), 400
        return None
