"""Authorization decorators for role-based access control."""
from functools import wraps

from flask import current_app, jsonify
from flask_login import current_user, login_required
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import AuditLog
from utils.security import request_metadata


def roles_required(*roles):
    allowed = {r.upper() for r in roles}

    def decorator(view_func):
        @wraps(view_func)
        @login_required
        def wrapped(*args, **kwargs):
            role_name = (getattr(current_user, "role", None) or "").upper()
            if role_name in allowed:
                return view_func(*args, **kwargs)

            current_app.logger.warning(
                "Unauthorized role access attempt",
                extra={"user_id": current_user.id, "role": role_name, "endpoint": view_func.__name__},
            )
            meta = request_metadata()
            audit = AuditLog(
                actor_id=str(current_user.id),
                actor_role=role_name or None,
                entity_type="USER",
                entity_id=str(current_user.id),
                action_type="UNAUTHORIZED_ACCESS",
                new_value={"endpoint": view_func.__name__, "required_roles": sorted(allowed)},
                ip_address=meta.get("ip_address"),
                user_agent=meta.get("user_agent"),
            )
            try:
                db.session.add(audit)
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                current_app.logger.exception("Failed to record unauthorized access attempt")
            return (
                jsonify(
                    {
                        "success": False,
                        "error": "FORBIDDEN",
                        "message": f"Access denied. Required roles: {', '.join(sorted(allowed))}.",
                    }
                ),
                403,
            )

        return wrapped

    return decorator
