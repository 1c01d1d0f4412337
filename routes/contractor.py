"""Contractor bidding and work-delivery API."""
from flask import Blueprint
from wtforms import FloatField, IntegerField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional as OptionalValue

from routes.common import JsonForm, current_actor, json_list, ok, parse_form
from utils import bidding
from utils.decorators import roles_required
from utils.identity import CONTRACTOR_ROLES

contractor_bp = Blueprint("contractor", __name__, url_prefix="/api/contractor")


class BidForm(JsonForm):
    proposed_cost = FloatField("Proposed cost", validators=[DataRequired(), NumberRange(min=0.01)])
    estimated_days = IntegerField("Estimated days", validators=[DataRequired(), NumberRange(min=1, max=365)])
    notes = TextAreaField("Notes", validators=[OptionalValue(), Length(max=2000)])


class ProofForm(JsonForm):
    notes = TextAreaField("Notes", validators=[OptionalValue(), Length(max=2000)])


@contractor_bp.route("/me", methods=["GET"])
@roles_required(*CONTRACTOR_ROLES)
def workload():
    data = bidding.contractor_workload(current_actor())
    return ok(
        {
            "contractor": data["contractor"].to_dict(),
            "assignments": [assignment.to_dict() for assignment in data["assignments"]],
            "bids": [bid.to_dict() for bid in data["bids"]],
            "completed_value": data["completed_value"],
        }
    )


@contractor_bp.route("/reports/<report_id>/bids", methods=["POST"])
@roles_required(*CONTRACTOR_ROLES)
def submit_bid(report_id):
    form = parse_form(BidForm)
    bid = bidding.submit_bid(
        report_id,
        current_actor(),
        proposed_cost=form.proposed_cost.data,
        estimated_days=form.estimated_days.data,
        notes=form.notes.data or None,
    )
    return ok(bid.to_dict(), "Bid submitted", 201)


@contractor_bp.route("/assignments/<assignment_id>/start", methods=["POST"])
@roles_required(*CONTRACTOR_ROLES)
def start_work(assignment_id):
    assignment = bidding.start_assignment(assignment_id, current_actor())
    return ok(assignment.to_dict(), "Work started")


@contractor_bp.route("/assignments/<assignment_id>/proofs", methods=["POST"])
@roles_required(*CONTRACTOR_ROLES)
def submit_proof(assignment_id):
    form = parse_form(ProofForm)
    proof = bidding.submit_proof(
        assignment_id,
        current_actor(),
        notes=form.notes.data or None,
        media_urls=json_list("media_urls"),
    )
    return ok(proof.to_dict(), "Completion proof submitted", 201)
