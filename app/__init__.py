# app/__init__.py
from __future__ import annotations

import logging
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .extensions import init_extensions, db
from .core.errors import ServiceError
from .core.models import ensure_operator

logger = logging.getLogger(__name__)


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger("app").setLevel(level)

def _error_body(code: str, message: str, status: int):
    return jsonify(status="error", code=code, message=message, errors=[]), status

def create_app(config_object="config.Config"):
    app = Flask(__name__)

    # Config básica
    app.config.from_object(config_object)
    app.config.setdefault("JSON_SORT_KEYS", False)

    _configure_logging(app)
    init_extensions(app)

    # Blueprints
    from .views.sales import bp as sales_bp
    from .views.shipments import bp as shipments_bp

    app.register_blueprint(sales_bp, url_prefix="/api/sales")
    app.register_blueprint(shipments_bp, url_prefix="/api/shipments")

    # Healthcheck simple
    @app.get("/health")
    def health():
        return jsonify(ok=True)

    # Errores del dominio -> JSON
    @app.errorhandler(ServiceError)
    def service_error(e: ServiceError):
        if e.http_status >= 500:
            logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def not_found(e):
        return _error_body("not_found", "Recurso no encontrado", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error_body("method_not_allowed", "Método no permitido", 405)

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        return _error_body("http_error", e.description or e.name, e.code or 500)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Error interno: %s", getattr(e, "original_exception", e))
        return _error_body("internal_error", "Error interno del servidor", 500)

    # Primera ejecución: esquema y operador por defecto
    with app.app_context():
        db.create_all()
        if app.config.get("SEED_DEFAULT_OPERATOR"):
            ensure_operator()

    return app
