"""Ward registry and ward-scoped views."""
from flask import Blueprint
from wtforms import StringField
from wtforms.validators import DataRequired, Length, Optional as OptionalValue

from routes.common import JsonForm, bool_arg, current_actor, ok, parse_form, query_args
from utils import wards
from utils.decorators import roles_required
from utils.errors import ValidationError
from utils.identity import ADMIN_ROLES, WARD_MANAGER_ROLES

wards_bp = Blueprint("wards", __name__, url_prefix="/api/wards")

MAX_WARD_PAGE = 100


class WardForm(JsonForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=150)])
    state = StringField("State", validators=[DataRequired(), Length(max=100)])
    district = StringField("District", validators=[OptionalValue(), Length(max=100)])


def _int_arg(args: dict, key: str, default: int, minimum: int = 0, maximum=None) -> int:
    raw = args.get(key)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{key} must be an integer.", details={"field": key})
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError(f"{key} is out of range.", details={"field": key})
    return value


@wards_bp.route("", methods=["GET"])
def list_wards():
    args = query_args()
    data = wards.list_wards(
        state=args.get("state"),
        district=args.get("district"),
        search=args.get("search"),
        include_stats=bool(bool_arg(args, "include_stats")),
    )
    return ok({"wards": data, "count": len(data)})


@wards_bp.route("", methods=["POST"])
@roles_required(*WARD_MANAGER_ROLES)
def create_ward():
    form = parse_form(WardForm)
    ward = wards.create_ward(current_actor(), name=form.name.data, state=form.state.data, district=form.district.data or None)
    return ok(ward.to_dict(), "Ward created successfully", 201)


@wards_bp.route("/<ward_id>/reports", methods=["GET"])
def ward_reports(ward_id):
    args = query_args()
    data = wards.ward_reports(
        ward_id,
        {
            "status": args.get("status"),
            "min_severity": _int_arg(args, "min_severity", 0, minimum=0, maximum=5),
        },
        limit=_int_arg(args, "limit", 20, minimum=1, maximum=MAX_WARD_PAGE),
        offset=_int_arg(args, "offset", 0),
    )
    return ok(data)


@wards_bp.route("/<ward_id>/analytics", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def ward_analytics(ward_id):
    return ok(wards.ward_analytics(ward_id, query_args().get("timeframe")))
