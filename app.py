"""Flask application factory for the civic report accountability service."""
import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, current_app, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from extensions import csrf, db, login_manager, migrate
from utils.audit_trail import init_audit_trail
from utils.errors import WorkflowError
from utils.identity import bearer_token, build_identity_provider
from utils.logger import init_logging
from utils.security import apply_security_headers


def _error(status: int, error: str, message: str):
    return jsonify({"success": False, "error": error, "message": message}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(WorkflowError)
    def workflow_error(error: WorkflowError):
        log = app.logger.warning if error.status_code >= 500 else app.logger.info
        log(
            "workflow_error",
            extra={"path": request.path, "method": request.method, "error": error.error_type, "detail": error.message},
        )
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(401)
    def unauthorized(error):
        return _error(401, "UNAUTHORIZED", "Authentication required.")

    @app.errorhandler(403)
    def forbidden(error):
        app.logger.warning("403 Forbidden", extra={"path": request.path, "method": request.method})
        return _error(403, "FORBIDDEN", "Access denied.")

    @app.errorhandler(404)
    def not_found_error(error):
        app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return _error(404, "NOT_FOUND", "Resource not found.")

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error(405, "METHOD_NOT_ALLOWED", "Method not allowed for this resource.")

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception("500 Internal Server Error")
        return _error(500, "INTERNAL_ERROR", "An unexpected error occurred.")


def ensure_default_admin(app: Flask) -> None:
    """Seed a SUPERADMIN account when DEFAULT_ADMIN_PASSWORD is configured."""
    from models import User  # Local import to avoid circular dependency

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_user = User.query.filter_by(email=admin_email).first()
    if admin_user:
        if admin_user.role != "SUPERADMIN" or not admin_user.is_active:
            admin_user.role = "SUPERADMIN"
            admin_user.is_active = True
            db.session.commit()
        return

    admin_user = User(full_name="System Administrator", email=admin_email, role="SUPERADMIN", is_active=True)
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        app.logger.exception("default_admin_seed_failed")
        raise
    app.logger.info("default_admin_created", extra={"email": admin_email})


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # Startup fails loudly on the first real connection instead.
            pass
        finally:
            engine.dispose()


def init_identity(app: Flask) -> None:
    provider = build_identity_provider(app.config)
    app.extensions["identity_provider"] = provider

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.request_loader
    def load_principal_from_request(req):
        token = bearer_token(req.headers.get("Authorization"))
        if not token:
            return None
        return current_app.extensions["identity_provider"].load_principal(token)

    @login_manager.unauthorized_handler
    def unauthorized():
        current_app.logger.info("unauthenticated_request", extra={"path": request.path, "method": request.method})
        return _error(401, "UNAUTHORIZED", "A valid bearer token is required.")


def create_app(config_name: Optional[str] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    # Optional instance-specific overrides
    if not app.config.get("TESTING"):
        app.config.from_pyfile("config.py", silent=True)
        os.makedirs(app.instance_path, exist_ok=True)

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    init_audit_trail(app)
    init_identity(app)

    from routes import register_blueprints

    register_blueprints(app)
    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        import models  # noqa: F401  registers the mappers before create_all

        db.create_all()
        ensure_default_admin(app)

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port, use_reloader=False)
