import logging

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

from .config import get_config
from .extensions import cors, db, migrate

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(app: Flask) -> None:
    level = logging.DEBUG if app.config.get("DEBUG") else logging.INFO
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    logging.getLogger("claimdesk").setLevel(level)


def _register_health_checks(app: Flask) -> None:
    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/db-check")
    def db_check():
        try:
            db.session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            db.session.rollback()
            app.logger.warning("db-check failed: %s", exc)
            return {"db": "error", "message": str(exc)}, 500
        return {"db": "ok"}


def create_app(config_name: str | None = None) -> Flask:
    """Build the claims service. ``config_name`` is development, production or testing."""
    # .env must be loaded before the config reads the environment
    load_dotenv()
    app = Flask(__name__)
    app.config.from_object(get_config(config_name))
    _configure_logging(app)

    # Behind Nginx in production
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=1)  # type: ignore[assignment]

    cors.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)

    # Register every table on the metadata for migrations and create_all
    from .models import audit_log, claim, message  # noqa: F401
    from .apis.v1 import register_api

    register_api(app)
    _register_health_checks(app)
    return app
