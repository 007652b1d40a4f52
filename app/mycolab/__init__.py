import logging
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.mycolab.config import load_config
from app.mycolab.db import init_db, rollback_db_session, teardown_db_session
from app.mycolab.routes import bp as routes_bp
from app.mycolab.auth import bp as auth_bp, load_current_user
from app.mycolab.modules.records.admin import bp as records_bp
from app.mycolab.modules.records.errors import ImmutableRecordError, RecordError
from app.mycolab.modules.outcomes.admin import bp as outcomes_bp

# Tables the running code expects; a missing one means `alembic upgrade head` was skipped.
REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "audit_events",
    "record_groups",
    "record_versions",
    "amendment_log",
    "entity_outcomes",
    "contamination_details",
)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    level = logging.getLevelName(str(app.config.get("LOG_LEVEL") or "INFO").upper())
    if isinstance(level, int):
        app.logger.setLevel(level)
        logging.getLogger("app.mycolab").setLevel(level)

    # CSRF protection (minimal)
    from app.mycolab.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid.", "code": "CSRFError"}), 400

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

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(records_bp, url_prefix="/api/records")
    app.register_blueprint(outcomes_bp, url_prefix="/api/outcomes")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            engine = app.extensions.get("sqlalchemy_engine")
            if engine is None:
                raise RuntimeError("sqlalchemy_engine not initialized")
            insp = sa_inspect(engine)
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(RecordError)
    def _err_record(e: RecordError):  # type: ignore[no-redef]
        rollback_db_session()
        app.logger.warning(
            "Rejected %s %s: %s (%s) request_id=%s",
            request.method,
            request.path,
            e.code,
            e,
            getattr(g, "request_id", None),
        )
        return jsonify({"error": str(e), "code": e.code}), e.status_code

    @app.errorhandler(ImmutableRecordError)
    def _err_immutable(e: ImmutableRecordError):  # type: ignore[no-redef]
        rollback_db_session()
        app.logger.exception("Append-only violation (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal error.", "code": "ImmutableRecordError"}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "Forbidden.", "code": "Forbidden", "missing_permission": missing}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found.", "code": "NotFound"}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "Request body too large.", "code": "RequestTooLarge"}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rollback_db_session()
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal error.", "code": "InternalServerError"}), 500

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": e.description, "code": type(e).__name__}), e.code or 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
