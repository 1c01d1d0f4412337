"""Account registration and API token issuance blueprint."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify
from flask_login import current_user, login_required
from wtforms import PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, EqualTo, Length

from extensions import db
from models import ROLES, User
from routes.common import JsonForm, current_actor, ok, parse_form
from utils.audit_trail import Fact, record_facts
from utils.errors import AuthorizationError, ConflictError, ValidationError
from utils.identity import Actor, issue_api_token
from utils.policy import commit_mutation
from utils.security import clean_text, password_meets_policy

auth_bp = Blueprint("auth", __name__)

SELF_SERVICE_ROLES = ("CITIZEN", "CONTRACTOR")


class RegistrationForm(JsonForm):
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    role = SelectField("Role", choices=[(r, r) for r in SELF_SERVICE_ROLES], default="CITIZEN")
    password = PasswordField("Password", validators=[DataRequired(), Length(min=12)])
    confirm_password = PasswordField(
        "Confirm Password", validators=[DataRequired(), EqualTo("password", message="Passwords must match.")]
    )


class TokenForm(JsonForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    password = PasswordField("Password", validators=[DataRequired()])


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "full_name": user.full_name,
        "email": user.email,
        "role": user.role,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _database_tokens_enabled() -> None:
    if current_app.config.get("IDENTITY_PROVIDER") == "static":
        raise ValidationError("Token issuance is disabled for the static credential provider.")


def create_account(full_name: str, email: str, password: str, role: str, actor=None) -> tuple[User, str]:
    """Create an active account and return it with a fresh API token."""
    if role not in ROLES:
        raise ValidationError("Invalid role selected.", details={"field": "role"})
    password_ok, reason = password_meets_policy(password)
    if not password_ok:
        raise ValidationError(reason, details={"field": "password"})
    email = email.lower().strip()
    if User.query.filter_by(email=email).first():
        raise ConflictError("An account with this email already exists.")

    user = User(full_name=clean_text(full_name, 150), email=email, role=role, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    token = issue_api_token(user, int(current_app.config.get("API_TOKEN_BYTES", 32)))
    commit_mutation("account_create", email=email, role=role)

    current_app.logger.info("account_created", extra={"user_id": user.id, "role": role})
    creator = actor or current_actor_for(user)
    record_facts(
        Fact(
            actor=creator,
            description=f"{role.title()} account created",
            entity_type="USER",
            entity_id=user.id,
            audit_action="CREATED",
            new_value={"email": email, "role": role},
        )
    )
    return user, token


def current_actor_for(user: User) -> Actor:
    return Actor(user.id, user.role, user.full_name)


@auth_bp.route("/register", methods=["POST"])
def register():
    _database_tokens_enabled()
    form = parse_form(RegistrationForm)
    user, token = create_account(form.full_name.data, form.email.data, form.password.data, form.role.data)
    return ok({"user": user_payload(user), "token": token}, "Registration successful", 201)


@auth_bp.route("/token", methods=["POST"])
def issue_token():
    _database_tokens_enabled()
    form = parse_form(TokenForm)
    user = User.query.filter_by(email=form.email.data.lower().strip()).first()
    if not user or not user.check_password(form.password.data):
        current_app.logger.warning("token_request_rejected", extra={"email": form.email.data.lower().strip()})
        return ok_error("Invalid credentials provided.", 401)
    if not user.is_active:
        raise AuthorizationError("Your account is inactive. Please contact support.")

    token = issue_api_token(user, int(current_app.config.get("API_TOKEN_BYTES", 32)))
    user.last_login_at = datetime.utcnow()
    commit_mutation("token_issue", user_id=user.id)
    current_app.logger.info("token_issued", extra={"user_id": user.id})
    return ok({"user": user_payload(user), "token": token}, "Token issued")


@auth_bp.route("/token", methods=["DELETE"])
@login_required
def revoke_token():
    _database_tokens_enabled()
    user = db.session.get(User, str(current_user.id))
    user.api_token_hash = None
    commit_mutation("token_revoke", user_id=user.id)
    return ok(None, "Token revoked")


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    actor = current_actor()
    return ok({"id": actor.subject_id, "role": actor.role, "name": actor.display_name})


def ok_error(message: str, status: int):
    return jsonify({"success": False, "error": "UNAUTHORIZED", "message": message}), status
