import logging
import os
import sys
from typing import Any, Mapping

from flask import Flask, abort, jsonify, send_from_directory
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from .shared.converter import LibreOfficeConverter  # noqa: E402
from .shared.storage import build_storage  # noqa: E402


def _env_bool(name: str, default: str = "false") -> bool:
    value = os.getenv(name, default).strip().lower()
    return value in ("1", "true", "yes", "y", "on")


def _load_config() -> dict[str, Any]:
    db_user = os.getenv("DB_USER", "eventdesk")
    db_password = os.getenv("POSTGRES_PASSWORD", "postgres")
    db_host = os.getenv("DB_HOST", "db")
    db_name = os.getenv("DB_NAME", "eventdesk")
    return {
        "SECRET_KEY": os.getenv("SECRET_KEY", "dev"),
        "ENV": os.getenv("FLASK_ENV", "production"),
        "SQLALCHEMY_DATABASE_URI": os.getenv(
            "DATABASE_URL",
            f"postgresql+psycopg2://{db_user}:{db_password}@{db_host}/{db_name}",
        ),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
        "SITE_ROOT": os.getenv("SITE_ROOT", "/srv"),
        "STORAGE_BACKEND": os.getenv("STORAGE_BACKEND", "local"),
        "MINIO_ENDPOINT": os.getenv("MINIO_ENDPOINT", "127.0.0.1:9000"),
        "MINIO_ACCESS_KEY": os.getenv("MINIO_ACCESS_KEY", ""),
        "MINIO_SECRET_KEY": os.getenv("MINIO_SECRET_KEY", ""),
        "MINIO_BUCKET": os.getenv("MINIO_BUCKET", "certificates"),
        "MINIO_SECURE": _env_bool("MINIO_SECURE"),
        "MINIO_PUBLIC_URL": os.getenv("MINIO_PUBLIC_URL") or None,
        "CERT_URL_EXPIRY_SECONDS": int(
            os.getenv("CERT_URL_EXPIRY_SECONDS", str(365 * 24 * 3600))
        ),
        "CERT_DOCUMENT_OUTPUT": os.getenv("CERT_DOCUMENT_OUTPUT", "pdf"),
        "CONVERTER_BINARY": os.getenv("CONVERTER_BINARY") or None,
        "CONVERTER_TIMEOUT": int(os.getenv("CONVERTER_TIMEOUT", "180")),
        "PUBLIC_BASE_URL": os.getenv("PUBLIC_BASE_URL", "http://localhost:5173"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
    }


def _configure_logging(level: str) -> None:
    logger = logging.getLogger("eventdesk")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
        logger.addHandler(handler)
    logger.setLevel(level.upper())


def create_app(config: Mapping[str, Any] | None = None):
    app = Flask(__name__)
    app.config.update(_load_config())
    if config:
        app.config.update(config)
    app.secret_key = app.config["SECRET_KEY"]

    _configure_logging(app.config["LOG_LEVEL"])
    db.init_app(app)

    # storage and converter handles live for the lifetime of the app
    app.extensions["eventdesk"] = {
        "storage": build_storage(app.config),
        "converter": LibreOfficeConverter(
            binary=app.config["CONVERTER_BINARY"],
            timeout=app.config["CONVERTER_TIMEOUT"],
        ),
    }

    @app.get("/health")
    def health():  # pragma: no cover - simple healthcheck
        return "OK", 200

    @app.get("/")
    def root():  # pragma: no cover - trivial route
        return jsonify({"status": "ok", "app": "eventdesk", "env": app.config["ENV"]})

    @app.get("/files/<path:key>")
    def stored_file(key: str):
        # only serves the local backend; remote storage hands out its own URLs
        if app.config["STORAGE_BACKEND"] != "local":
            abort(404)
        return send_from_directory(os.path.join(app.config["SITE_ROOT"], "files"), key)

    from .routes.certificates import bp as certificates_bp
    from .routes.checkin import bp as checkin_bp

    app.register_blueprint(certificates_bp)
    app.register_blueprint(checkin_bp)

    return app


def get_storage():
    from flask import current_app

    return current_app.extensions["eventdesk"]["storage"]


def get_converter():
    from flask import current_app

    return current_app.extensions["eventdesk"]["converter"]
