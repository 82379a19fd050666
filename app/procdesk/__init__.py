import logging
from datetime import timedelta

from flask import Flask, g, request
from dotenv import load_dotenv

from app.procdesk.config import load_config
from app.procdesk.db import init_db, teardown_db_session
from app.procdesk.errors import IntegrityError, ProcedureError
from app.procdesk.routes import bp as routes_bp
from app.procdesk.auth import bp as auth_bp, load_current_user
from app.procdesk.modules.procedures.api import bp as procedures_bp
from app.procdesk.modules.procedures.service import Notifier, ProcedureService
from app.procdesk.modules.procedures.store import RecordStore, SqlRecordBackend
from app.procdesk.modules.procedures.vault import DocumentVault, load_key
from app.procdesk.storage import S3Storage, storage_from_config

logger = logging.getLogger(__name__)


def _build_procedure_service(app: Flask, notifier: Notifier | None) -> ProcedureService:
    # Missing/invalid key material is a startup failure, never a per-request one.
    key = load_key(app.config["VAULT_KEY_PATH"])
    vault = DocumentVault(storage_from_config(app.config), key)
    store = RecordStore(SqlRecordBackend(app.extensions["sqlalchemy_sessionmaker"]))
    return ProcedureService(
        store,
        vault,
        notifier=notifier,
        max_upload_bytes=app.config["MAX_UPLOAD_BYTES"],
    )


def create_app(*, notifier: Notifier | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=24)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

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

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            raise RuntimeError(f"STORAGE CONFIG ERROR: Missing required S3 env vars: {', '.join(missing_s3)}")
        storage = storage_from_config(app.config)
        if isinstance(storage, S3Storage):
            storage._client().head_bucket(Bucket=storage.bucket)
            app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)

    try:
        app.extensions["procedure_service"] = _build_procedure_service(app, notifier)
    except IntegrityError as e:
        app.logger.critical("Vault key unavailable; refusing to start: %s", e.message)
        raise

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api")
    app.register_blueprint(procedures_bp, url_prefix="/api/procedures")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            g.current_principal = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ProcedureError)
    def _procedure_error(e: ProcedureError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if isinstance(e, IntegrityError):
            app.logger.error("Integrity failure (request_id=%s path=%s): %s", rid, request.path, e.message)
        elif e.status_code in (401, 403):
            app.logger.warning("%s (request_id=%s path=%s)", e.code, rid, request.path)
        return e.to_dict(), e.status_code

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return {"error": "not_found", "message": "Not found."}, 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return {"error": "validation_error", "message": "Upload too large."}, 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return {"error": "internal_error", "message": "Unexpected error. Please try again later."}, 500

    logger.info("create_app() complete; app ready to serve")

    return app
