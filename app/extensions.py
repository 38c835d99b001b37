# app/extensions.py
from __future__ import annotations

from flask import current_app, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager, AnonymousUserMixin
from flask_cors import CORS
from sqlalchemy import event

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()


def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": app.config.get("CORS_ORIGINS", "*")}})

    # Activa FKs en SQLite (un listener por engine de esta app)
    with app.app_context():
        if app.config.get("SQLALCHEMY_DATABASE_URI", "").startswith("sqlite"):
            event.listen(db.engine, "connect", _set_sqlite_pragma)

    # Import tardío para evitar import circular
    from app.core.models import User  # noqa

    # El modelo no usa UserMixin: garantiza la interfaz esperada por Flask-Login
    if not hasattr(User, "get_id"):
        User.get_id = lambda self: str(self.id)
    if not hasattr(User, "is_active"):
        User.is_active = property(lambda self: bool(getattr(self, "activo", True)))
    if not hasattr(User, "is_authenticated"):
        User.is_authenticated = property(lambda self: True)
    if not hasattr(User, "is_anonymous"):
        User.is_anonymous = property(lambda self: False)

    class _Anon(AnonymousUserMixin):
        pass
    login_manager.anonymous_user = _Anon

    @login_manager.request_loader
    def load_operator(request):
        # La autenticación ocurre aguas arriba; acá sólo se resuelve el operador
        raw = request.headers.get(current_app.config.get("OPERATOR_HEADER", "X-Operator-Id"))
        if not raw or not raw.strip().isdigit():
            return None
        user = db.session.get(User, int(raw))
        if user is None or not user.activo:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify(status="error", code="unauthorized", message="Operador no identificado", errors=[]), 401
