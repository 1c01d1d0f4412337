"""JSON envelope, form parsing, and caller helpers shared by the API blueprints."""
from datetime import datetime
from typing import Optional

from flask import jsonify, request
from flask_login import current_user
from flask_wtf import FlaskForm
from wtforms import BooleanField, DateTimeField, StringField
from wtforms.validators import DataRequired, Length, Optional as OptionalValue, StopValidation

from utils.errors import ValidationError
from utils.identity import Actor, actor_from_principal
from utils.security import sanitize_input

DATETIME_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"]


class JsonForm(FlaskForm):
    """Flask-WTF form fed from the JSON body; bearer-token requests carry no CSRF token."""

    class Meta:
        csrf = False


def key_present(form, field):
    """BooleanField reads a missing key as False; require the caller to send it."""
    if not field.raw_data:
        raise StopValidation(f"{field.label.text} is required.")


def json_bool(label: str, required: bool = False, **kwargs) -> BooleanField:
    if required:
        kwargs["validators"] = [key_present, *kwargs.get("validators", [])]
    return BooleanField(label, false_values=(False, "false", "False", "0", 0, ""), **kwargs)


def json_datetime(label: str) -> DateTimeField:
    return DateTimeField(label, format=DATETIME_FORMATS, validators=[OptionalValue()])


def justification_field() -> StringField:
    return StringField("Justification", validators=[DataRequired(message="Justification is required."), Length(max=2000)])


def ok(data=None, message: str = "", status: int = 200):
    return jsonify({"success": True, "message": message, "data": data}), status


def parse_form(form_cls) -> FlaskForm:
    form = form_cls()
    if not form.validate():
        raise ValidationError("Invalid request payload.", details={"fields": form.errors})
    return form


def json_list(key: str) -> list:
    payload = request.get_json(silent=True) or {}
    value = payload.get(key) or []
    if not isinstance(value, list):
        raise ValidationError(f"{key} must be a list.", details={"field": key})
    return value


def query_args() -> dict:
    return sanitize_input(request.args)


def page_args(args: dict) -> tuple[int, Optional[int]]:
    try:
        page = max(int(args.get("page") or 1), 1)
        per_page = int(args["per_page"]) if args.get("per_page") else None
    except ValueError:
        raise ValidationError("page and per_page must be integers.")
    if per_page is not None and per_page < 1:
        raise ValidationError("per_page must be positive.")
    return page, per_page


def bool_arg(args: dict, key: str) -> Optional[bool]:
    if args.get(key) in (None, ""):
        return None
    return args[key].lower() == "true"


def current_actor() -> Actor:
    return actor_from_principal(current_user)


def pagination_payload(pagination) -> dict:
    return {
        "page": pagination.page,
        "per_page": pagination.per_page,
        "total": pagination.total,
        "pages": pagination.pages,
    }


def date_arg(args: dict, key: str):
    value = args.get(key)
    if not value:
        return None
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValidationError(f"{key} must be an ISO date.", details={"field": key})


def json_object(key: str) -> dict:
    payload = request.get_json(silent=True) or {}
    value = payload.get(key) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"{key} must be an object.", details={"field": key})
    return value
