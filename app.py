import os
import uuid
import logging
from logging.handlers import RotatingFileHandler
from time import time

from flask import Flask, request, g, jsonify
from dotenv import load_dotenv
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from models.base import init_engine_and_session, Base
from controllers.accounting import accounting_bp
from controllers.admin import admin_bp
from services.errors import AccountingError
from services.metrics import init_app as init_metrics, REQUEST_COUNT, REQUEST_LATENCY

# .env is read once at import; `flask run` would also pick it up on its own
load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _log_handler() -> logging.Handler:
    if _env_bool("LOG_TO_STDOUT", True):
        return logging.StreamHandler()
    log_dir = os.path.join(os.path.dirname(__file__), "log")
    try:
        os.makedirs(log_dir, exist_ok=True)
        return RotatingFileHandler(
            os.path.join(log_dir, "ledger.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError:
        # read-only filesystem
        return logging.StreamHandler()


def _configure_logging(app: Flask) -> None:
    handler = _log_handler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()  # create_app may run more than once per process
    root.addHandler(handler)
    app.logger.setLevel(logging.INFO)


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AccountingError)
    def accounting_error(e: AccountingError):
        if e.status >= 500:
            app.logger.exception("%s %s failed", request.method, request.path)
        else:
            app.logger.warning("%s %s %s: %s", e.status, request.method, request.path, e)
        return jsonify({"error": str(e), "code": e.code}), e.status

    @app.errorhandler(Exception)
    def unhandled(e: Exception):
        if isinstance(e, HTTPException):
            app.logger.warning("%s %s %s", e.code, request.method, request.path)
            return jsonify({"error": e.name, "path": request.path}), e.code
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def _start_request():
        g._t0 = time()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    @app.after_request
    def _finish_request(resp):
        elapsed = time() - getattr(g, "_t0", time())
        resp.headers.setdefault("X-Request-ID", getattr(g, "request_id", ""))
        app.logger.info("%s %s %s %s %.1fms", request.remote_addr, request.method,
                        request.full_path, resp.status_code, elapsed * 1000)

        # scrapes of /metrics stay out of the request series
        if not (request.path or "").startswith("/metrics"):
            endpoint = (request.endpoint or "").replace(".", "_") or "unknown"
            REQUEST_COUNT.labels(method=request.method, endpoint=endpoint,
                                 status=str(resp.status_code)).inc()
            REQUEST_LATENCY.labels(endpoint=endpoint,
                                   method=request.method).observe(elapsed)
        return resp


def create_app(test_config: dict | None = None):
    app = Flask(__name__, instance_relative_config=True)

    app_env = os.getenv("APP_ENV", "development").lower()
    secret_key = os.getenv("FLASK_SECRET_KEY")
    if not secret_key and app_env == "production":
        raise RuntimeError("FLASK_SECRET_KEY must be set in production (.env)")

    app.config.from_mapping(
        SECRET_KEY=secret_key or os.urandom(32),
        APP_ENV=app_env,
        APP_TZ=os.getenv("APP_TZ", "UTC"),
        AUTO_CREATE_SCHEMA=_env_bool("AUTO_CREATE_SCHEMA", True),
        METRICS_ENABLED=_env_bool("METRICS_ENABLED", True),
    )
    if test_config:
        app.config.update(test_config)

    _configure_logging(app)

    engine, _Session = init_engine_and_session()
    if app.config["AUTO_CREATE_SCHEMA"]:
        Base.metadata.create_all(engine, checkfirst=True)

    app.register_blueprint(accounting_bp)
    app.register_blueprint(admin_bp)
    if app.config["METRICS_ENABLED"]:
        init_metrics(app)

    _register_error_handlers(app)
    _register_request_hooks(app)

    @app.get("/healthz")
    def healthz():
        return jsonify(status="ok"), 200

    @app.get("/readyz")
    def readyz():
        # ready once the ledger database answers
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            app.logger.exception("Readiness check failed")
            return jsonify(status="error", error=str(e)), 500
        return jsonify(status="ok"), 200

    app.logger.info("capex ledger ready (env=%s, tz=%s)", app_env, app.config["APP_TZ"])
    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8000")),
            debug=(app.config["APP_ENV"] != "production"))
