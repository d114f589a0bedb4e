from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {
        "service": "riskdocs",
        "env": current_app.config.get("ENV"),
        "endpoints": {
            "documents": "/api/documents",
            "transitions": "/api/documents/transitions",
            "login": "/auth/login",
        },
    }


@bp.get("/health")
def health():
    """
    Health check endpoint. Returns JSON.

    Reports the schema check result; a failed check is re-run so a
    migration applied after boot is picked up without a restart.
    """
    ok = bool(current_app.config.get("_schema_health_ok"))
    if not ok:
        check = current_app.extensions.get("riskdocs.schema_check")
        ok = bool(check and check())
    body = {"ok": ok, "schema_ok": ok}
    if not ok:
        body["missing_tables"] = current_app.config.get("_schema_health_missing") or []
    return body, (200 if ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB access, minimal overhead.
    """
    return "ok", 200
