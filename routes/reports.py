"""Citizen-facing report intake, listing, and engagement API."""
from flask import Blueprint, request
from flask_login import login_required
from wtforms import FloatField, IntegerField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional as OptionalValue

from routes.common import JsonForm, current_actor, json_bool, ok, page_args, pagination_payload, parse_form, query_args
from utils import lifecycle
from utils.decorators import roles_required
from utils.scoring import priority_score

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


class ReportForm(JsonForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=255)])
    description = TextAreaField("Description", validators=[OptionalValue(), Length(max=5000)])
    latitude = FloatField("Latitude", validators=[NumberRange(min=-90, max=90)])
    longitude = FloatField("Longitude", validators=[NumberRange(min=-180, max=180)])
    address = StringField("Address", validators=[OptionalValue(), Length(max=500)])
    severity = IntegerField("Severity", default=1, validators=[OptionalValue(), NumberRange(min=1, max=5)])
    ward_id = StringField("Ward", validators=[DataRequired(), Length(max=36)])
    department_id = StringField("Department", validators=[OptionalValue(), Length(max=36)])
    is_anonymous = json_bool("Submit anonymously")


class ReportEditForm(JsonForm):
    title = StringField("Title", validators=[OptionalValue(), Length(max=255)])
    description = TextAreaField("Description", validators=[OptionalValue(), Length(max=5000)])
    address = StringField("Address", validators=[OptionalValue(), Length(max=500)])
    severity = IntegerField("Severity", validators=[OptionalValue(), NumberRange(min=1, max=5)])


def report_payload(report) -> dict:
    payload = report.to_dict()
    payload["priority_score"] = priority_score(report)
    payload["subscriber_count"] = report.subscriber_count
    return payload


@reports_bp.route("", methods=["POST"])
@roles_required("CITIZEN")
def create_report():
    form = parse_form(ReportForm)
    report = lifecycle.create_report(
        current_actor(),
        title=form.title.data,
        description=form.description.data,
        latitude=form.latitude.data,
        longitude=form.longitude.data,
        address=form.address.data,
        severity=form.severity.data or 1,
        ward_id=form.ward_id.data,
        department_id=form.department_id.data or None,
        is_anonymous=form.is_anonymous.data,
    )
    return ok(report_payload(report), "Report created successfully", 201)


@reports_bp.route("", methods=["GET"])
def list_reports():
    args = query_args()
    page, per_page = page_args(args)
    pagination = lifecycle.list_reports(
        {
            "status": args.get("status"),
            "ward_id": args.get("ward_id"),
            "severity": args.get("severity"),
            "reporter_id": args.get("reporter_id"),
        },
        page=page,
        per_page=per_page,
    )
    return ok(
        {
            "reports": [report_payload(report) for report in pagination.items],
            "pagination": pagination_payload(pagination),
        }
    )


@reports_bp.route("/<report_id>", methods=["GET"])
def get_report(report_id):
    report, history = lifecycle.get_report(report_id)
    payload = report_payload(report)
    payload["history"] = [entry.to_dict() for entry in history]
    return ok(payload)


@reports_bp.route("/<report_id>", methods=["PATCH"])
@login_required
def edit_report(report_id):
    form = parse_form(ReportEditForm)
    submitted = request.get_json(silent=True) or {}
    changes = {name: getattr(form, name).data for name in lifecycle.EDITABLE_FIELDS if name in submitted}
    report = lifecycle.edit_report(report_id, current_actor(), changes)
    return ok(report_payload(report), "Report updated successfully")


@reports_bp.route("/<report_id>", methods=["DELETE"])
@login_required
def delete_report(report_id):
    lifecycle.delete_report(report_id, current_actor())
    return ok({"id": report_id}, "Report deleted successfully")


@reports_bp.route("/<report_id>/upvote", methods=["POST"])
@roles_required("CITIZEN")
def upvote(report_id):
    report = lifecycle.upvote_report(report_id, current_actor())
    return ok({"report_id": report.id, "upvotes": report.upvotes}, "Report upvoted")


@reports_bp.route("/<report_id>/subscribe", methods=["POST"])
@roles_required("CITIZEN")
def subscribe(report_id):
    lifecycle.subscribe(report_id, current_actor())
    return ok({"report_id": report_id, "subscribed": True}, "Subscribed to report updates", 201)


@reports_bp.route("/<report_id>/subscribe", methods=["DELETE"])
@roles_required("CITIZEN")
def unsubscribe(report_id):
    lifecycle.unsubscribe(report_id, current_actor())
    return ok({"report_id": report_id, "subscribed": False}, "Unsubscribed from report updates")
