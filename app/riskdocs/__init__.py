import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import inspect as sa_inspect

from app.riskdocs.config import load_config
from app.riskdocs.db import init_db, teardown_db_session
from app.riskdocs.routes import bp as routes_bp
from app.riskdocs.auth import bp as auth_bp, load_current_user
from app.riskdocs.security import install_csrf_guard
from app.riskdocs.modules.documents.admin import bp as documents_bp
from app.riskdocs.modules.documents.errors import LifecycleError
from app.riskdocs.modules.actions.admin import bp as actions_bp
from app.riskdocs.modules.change_summaries.admin import bp as change_summaries_bp
from app.riskdocs.modules.artifacts.admin import bp as artifacts_bp

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("users", "audit_events", "lineages", "documents", "actions", "change_summaries", "locked_artifacts")


def _json_error(code: str, message: str, status: int, **extra):
    body = {"error": code, "message": message}
    body.update(extra)
    return jsonify(body), status


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    install_csrf_guard(app)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from app.riskdocs.storage import S3Storage, StorageError, storage_from_config

            storage = storage_from_config(app.config)
            try:
                if isinstance(storage, S3Storage):
                    storage.check_bucket()
                    app.logger.info("Artifact store reachable: S3 bucket '%s'", storage.bucket)
            except StorageError as e:
                app.logger.error("STORAGE CONFIG ERROR: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api")
    app.register_blueprint(actions_bp, url_prefix="/api")
    app.register_blueprint(change_summaries_bp, url_prefix="/api")
    app.register_blueprint(artifacts_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect tables the code expects but the DB lacks.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> bool:
        engine = app.extensions.get("sqlalchemy_engine")
        insp = sa_inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        return not missing

    app.extensions["riskdocs.schema_check"] = _run_schema_health_check
    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok") or not request.path.startswith("/api"):
            return None
        # Re-check once the schema may have been migrated since boot.
        if _run_schema_health_check():
            return None
        return _json_error(
            "schema_out_of_date",
            "Database schema is out of date.",
            500,
            missing=app.config.get("_schema_health_missing") or [],
        )

    @app.errorhandler(LifecycleError)
    def _err_lifecycle(e: LifecycleError):  # type: ignore[no-redef]
        if e.http_status >= 500:
            app.logger.error("Lifecycle failure %s (request_id=%s): %s", e.code, getattr(g, "request_id", None), e)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _json_error("internal_error", "Internal server error.", 500)

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return _json_error("unauthenticated", "Login required.", 401)

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return _json_error("forbidden", "Permission denied.", 403, missing_permission=missing)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return _json_error("not_found", "Not found.", 404)

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return _json_error("method_not_allowed", "Method not allowed.", 405)

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return _json_error("file_too_large", f"File too large. Maximum size is {limit_mb}MB.", 413)

    logger.info("create_app() complete; app ready to serve")

    return app
