import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.precast.config import load_config
from app.precast.db import init_db, teardown_db_session
from app.precast.routes import bp as routes_bp
from app.precast.auth import bp as auth_bp, load_current_user
from app.precast.modules.document_management.admin import bp as documents_bp, share_bp
from app.precast.modules.document_management.errors import DocumentError

# Tables the API cannot work without; checked once before the first API request.
REQUIRED_TABLES = (
    "users",
    "audit_events",
    "documents",
    "document_versions",
    "approval_workflows",
    "document_approvals",
    "document_shares",
    "document_access_logs",
    "document_templates",
)

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz", "/share/")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.logger.setLevel(app.config["LOG_LEVEL"])
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # CSRF protection (minimal)
    from app.precast.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_PUBLIC_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "csrf", "message": "CSRF token missing or invalid."}), 400

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
        import os

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
            from app.precast.storage import StorageError, storage_from_config

            try:
                storage_from_config(app.config).check()
                app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", app.config.get("S3_BUCKET"))
            except StorageError as e:
                app.logger.error("STORAGE CONFIG ERROR: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")
    app.register_blueprint(share_bp)

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect a database that was never migrated.
    app.config.setdefault("_schema_health_checked", False)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> list[str]:
        engine = app.extensions.get("sqlalchemy_engine")
        if engine is None:
            raise RuntimeError("sqlalchemy_engine not initialized")
        insp = sa_inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        return missing

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if not request.path.startswith(("/api/", "/share/")):
            return None
        if not app.config.get("_schema_health_checked"):
            app.config["_schema_health_missing"] = _run_schema_health_check()
            app.config["_schema_health_checked"] = True
        missing = app.config.get("_schema_health_missing") or []
        if missing:
            return jsonify({"error": "schema_out_of_date", "missing": missing}), 500
        return None

    @app.errorhandler(DocumentError)
    def _err_document(e: DocumentError):  # type: ignore[no-redef]
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.info(
            "%s (status=%s document_id=%s request_id=%s): %s",
            e.code,
            e.status_code,
            e.document_id,
            getattr(g, "request_id", None),
            e.message,
        )
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in the logs.
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "internal_error", "request_id": rid}), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "not_found", "message": "Not found."}), 404

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "forbidden", "missing_permission": missing}), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit = app.config.get("MAX_UPLOAD_MB")
        return jsonify({"error": "too_large", "message": f"File too large. Maximum size is {limit}MB."}), 413

    # Startup logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
