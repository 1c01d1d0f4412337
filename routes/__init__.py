"""Blueprint registration and service-level routes."""
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from extensions import csrf, db
from utils.audit_trail import trail_health
from .admin import admin_bp
from .auth import auth_bp
from .contractor import contractor_bp
from .reports import reports_bp
from .track import track_bp
from .wards import wards_bp

main_bp = Blueprint("main", __name__)

API_BLUEPRINTS = (reports_bp, admin_bp, contractor_bp, wards_bp, track_bp)


@main_bp.route("/")
def index():
    return jsonify(
        {
            "service": "civic-report-tracker",
            "endpoints": ["/api/reports", "/api/admin", "/api/contractor", "/api/wards", "/api/track", "/auth"],
        }
    )


@main_bp.route("/healthz")
def healthz():
    database = "ok"
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("health_check_database_failed")
        database = "unavailable"
    failures = trail_health().failures
    status = 200 if database == "ok" else 503
    return jsonify({"status": "ok" if status == 200 else "degraded", "database": database, "trail_write_failures": failures}), status


def register_blueprints(app) -> None:
    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    csrf.exempt(auth_bp)
    for blueprint in API_BLUEPRINTS:
        app.register_blueprint(blueprint)
        # Bearer-token clients never hold a CSRF cookie.
        csrf.exempt(blueprint)


__all__ = ["main_bp", "auth_bp", "reports_bp", "admin_bp", "contractor_bp", "wards_bp", "track_bp", "register_blueprints"]
