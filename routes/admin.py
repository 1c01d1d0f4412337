"""Administrative triage, assignment, moderation, and accountability API."""
from flask import Blueprint
from wtforms import FloatField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, NumberRange, Optional as OptionalValue

from models import MODERATION_ACTIONS, REPORT_STATUSES, ROLES
from routes.auth import create_account, user_payload
from routes.common import (
    JsonForm,
    bool_arg,
    current_actor,
    date_arg,
    json_bool,
    json_datetime,
    json_object,
    justification_field,
    ok,
    page_args,
    pagination_payload,
    parse_form,
    query_args,
)
from utils import analytics, bidding, lifecycle, moderation, wards
from utils.decorators import roles_required
from utils.identity import ADMIN_ROLES, BLOCKING_ROLES

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


class StatusForm(JsonForm):
    status = SelectField("Status", choices=[(s, s) for s in REPORT_STATUSES], validators=[DataRequired()])
    justification = justification_field()


class AssignForm(JsonForm):
    contractor_id = StringField("Contractor", validators=[OptionalValue(), Length(max=36)])
    department_id = StringField("Department", validators=[OptionalValue(), Length(max=36)])
    deadline = json_datetime("Deadline")
    agreed_cost = FloatField("Agreed cost", validators=[OptionalValue(), NumberRange(min=0)])
    justification = justification_field()


class ModerationForm(JsonForm):
    action = SelectField("Action", choices=[(a, a) for a in MODERATION_ACTIONS], validators=[DataRequired()])
    duplicate_of_id = StringField("Original report", validators=[OptionalValue(), Length(max=36)])
    justification = justification_field()


class JustificationForm(JsonForm):
    justification = justification_field()


class BidAcceptForm(JsonForm):
    bid_id = StringField("Bid", validators=[DataRequired(), Length(max=36)])
    deadline = json_datetime("Deadline")
    justification = justification_field()


class ProofReviewForm(JsonForm):
    approve = json_bool("Approve", required=True)
    justification = justification_field()


class BlockForm(JsonForm):
    is_blocked = json_bool("Blocked", required=True)
    justification = justification_field()


class ContractorForm(JsonForm):
    user_id = StringField("User", validators=[DataRequired(), Length(max=36)])
    business_name = StringField("Business name", validators=[DataRequired(), Length(max=255)])
    email = StringField("Email", validators=[OptionalValue(), Email(), Length(max=255)])
    phone = StringField("Phone", validators=[OptionalValue(), Length(max=50)])
    is_verified = json_bool("Verified")


class DepartmentForm(JsonForm):
    name = StringField("Name", validators=[DataRequired(), Length(max=255)])
    ward_id = StringField("Ward", validators=[OptionalValue(), Length(max=36)])
    official_email = StringField("Official email", validators=[OptionalValue(), Email(), Length(max=255)])


class StaffAccountForm(JsonForm):
    full_name = StringField("Full Name", validators=[DataRequired(), Length(max=150)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    role = SelectField("Role", choices=[(r, r) for r in ROLES], validators=[DataRequired()])
    password = StringField("Password", validators=[DataRequired(), Length(min=12)])


@admin_bp.route("/reports", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def list_reports():
    args = query_args()
    page, per_page = page_args(args)
    filters = {
        "status": args.get("status"),
        "ward_id": args.get("ward_id"),
        "department_id": args.get("department_id"),
        "severity": args.get("severity"),
        "priority": args.get("priority"),
        "search": args.get("search"),
        "assigned_to": args.get("assigned_to"),
        "is_spam": bool_arg(args, "is_spam"),
        "is_sensitive": bool_arg(args, "is_sensitive"),
        "date_from": date_arg(args, "date_from"),
        "date_to": date_arg(args, "date_to"),
    }
    data = analytics.admin_list_reports(
        filters,
        page=page,
        per_page=per_page,
        sort_by=args.get("sort_by") or "created_at",
        sort_order=(args.get("sort_order") or "desc").lower(),
    )
    return ok(data)


@admin_bp.route("/reports/<report_id>", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def report_detail(report_id):
    return ok(analytics.admin_report_detail(report_id))


@admin_bp.route("/reports/<report_id>/status", methods=["PATCH"])
@roles_required(*ADMIN_ROLES)
def change_status(report_id):
    form = parse_form(StatusForm)
    report = lifecycle.transition_status(report_id, form.status.data, form.justification.data, current_actor())
    return ok(report.to_dict(), f"Report status updated to {report.status.value}")


@admin_bp.route("/reports/<report_id>/assign", methods=["PATCH"])
@roles_required(*ADMIN_ROLES)
def assign_report(report_id):
    form = parse_form(AssignForm)
    assignment = bidding.assign_report(
        report_id,
        current_actor(),
        form.justification.data,
        contractor_id=form.contractor_id.data or None,
        department_id=form.department_id.data or None,
        deadline=form.deadline.data,
        agreed_cost=form.agreed_cost.data,
    )
    return ok(assignment.to_dict(), "Report assigned successfully")


@admin_bp.route("/reports/<report_id>/moderate", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def moderate_report(report_id):
    form = parse_form(ModerationForm)
    report, record = moderation.moderate(
        report_id,
        form.action.data,
        form.justification.data,
        current_actor(),
        flag_updates=json_object("flag_updates"),
        duplicate_of_id=form.duplicate_of_id.data or None,
    )
    return ok({"report": report.to_dict(), "moderator_action": record.to_dict()}, f"Moderation action {record.action} applied")


@admin_bp.route("/reports/<report_id>/escalate", methods=["PATCH"])
@roles_required(*ADMIN_ROLES)
def escalate_report(report_id):
    form = parse_form(JustificationForm)
    report, record = moderation.moderate(report_id, "ESCALATE", form.justification.data, current_actor())
    return ok({"report": report.to_dict(), "moderator_action": record.to_dict()}, "Report escalated")


@admin_bp.route("/reports/<report_id>/bids", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def report_bids(report_id):
    result = bidding.list_bids(report_id, current_actor())
    return ok(
        {
            "report": {"id": result["report"].id, "title": result["report"].title, "status": result["report"].status.value},
            "bids": [bid.to_dict() for bid in result["bids"]],
            "statistics": result["statistics"],
        }
    )


@admin_bp.route("/reports/<report_id>/bid/assign", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def accept_bid(report_id):
    form = parse_form(BidAcceptForm)
    assignment = bidding.accept_bid(report_id, form.bid_id.data, form.justification.data, current_actor(), form.deadline.data)
    return ok({"assignment": assignment.to_dict(), "accepted_bid": assignment.bid.to_dict()}, "Bid assigned successfully")


@admin_bp.route("/proofs/<proof_id>/review", methods=["PATCH"])
@roles_required(*ADMIN_ROLES)
def review_proof(proof_id):
    form = parse_form(ProofReviewForm)
    proof = bidding.review_proof(proof_id, form.approve.data, form.justification.data, current_actor())
    return ok(proof.to_dict(), f"Proof {proof.status.lower()} successfully")


@admin_bp.route("/assignments/<assignment_id>/cancel", methods=["POST"])
@roles_required(*ADMIN_ROLES)
def cancel_assignment(assignment_id):
    form = parse_form(JustificationForm)
    assignment = bidding.cancel_assignment(assignment_id, form.justification.data, current_actor())
    return ok(assignment.to_dict(), "Assignment cancelled")


@admin_bp.route("/contractors", methods=["POST"])
@roles_required(*BLOCKING_ROLES)
def register_contractor():
    form = parse_form(ContractorForm)
    contractor = bidding.register_contractor(
        current_actor(),
        user_id=form.user_id.data,
        business_name=form.business_name.data,
        email=form.email.data or None,
        phone=form.phone.data or None,
        is_verified=form.is_verified.data,
    )
    return ok(contractor.to_dict(), "Contractor registered", 201)


@admin_bp.route("/contractors/<contractor_id>/block", methods=["PATCH"])
@roles_required(*BLOCKING_ROLES)
def block_contractor(contractor_id):
    form = parse_form(BlockForm)
    outcome = bidding.set_contractor_blocked(contractor_id, form.is_blocked.data, form.justification.data, current_actor())
    verb = "blocked" if outcome.contractor.is_blocked else "unblocked"
    return ok(
        {
            "contractor": outcome.contractor.to_dict(),
            "cancelled_assignments": [a.id for a in outcome.cancelled_assignments],
            "cascade_failed": outcome.cascade_failed,
        },
        f"Contractor {verb} successfully",
    )


@admin_bp.route("/departments", methods=["POST"])
@roles_required(*BLOCKING_ROLES)
def create_department():
    form = parse_form(DepartmentForm)
    department = wards.create_department(
        current_actor(),
        name=form.name.data,
        ward_id=form.ward_id.data or None,
        official_email=form.official_email.data or None,
    )
    return ok(department.to_dict(), "Department created", 201)


@admin_bp.route("/users", methods=["POST"])
@roles_required("SUPERADMIN")
def create_staff_account():
    form = parse_form(StaffAccountForm)
    user, token = create_account(form.full_name.data, form.email.data, form.password.data, form.role.data, actor=current_actor())
    return ok({"user": user_payload(user), "token": token}, "Account created", 201)


@admin_bp.route("/dashboard/stats", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def dashboard_stats():
    return ok(analytics.dashboard_stats(query_args().get("ward_id")))


@admin_bp.route("/analytics/dashboard", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def analytics_dashboard():
    return ok(analytics.analytics_overview(query_args().get("timeframe")))


@admin_bp.route("/audit-logs", methods=["GET"])
@roles_required(*ADMIN_ROLES)
def audit_logs():
    args = query_args()
    page, per_page = page_args(args)
    pagination = analytics.audit_logs(
        {
            "entity_type": args.get("entity_type"),
            "entity_id": args.get("entity_id"),
            "actor_id": args.get("actor_id"),
            "action_type": args.get("action_type"),
            "date_from": date_arg(args, "date_from"),
            "date_to": date_arg(args, "date_to"),
        },
        page=page,
        per_page=per_page,
    )
    return ok({"logs": [entry.to_dict() for entry in pagination.items], "pagination": pagination_payload(pagination)})
