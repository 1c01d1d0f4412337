"""Direct assignment, bid acceptance, completion proofs, and the contractor block cascade."""
from datetime import datetime, timedelta

import pytest

from conftest import JUSTIFICATION, actor_for
from extensions import db
from models import Assignment, AuditLog, Bid, CompletionProof, Report, ReportHistory, ReportStatus
from utils import bidding, lifecycle
from utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError


@pytest.fixture
def validated_report(citizen, ward, make_report):
    return make_report(citizen, ward, status=ReportStatus.VALIDATED)


def _bid(contractor, report, cost=5000.0, days=7):
    return bidding.submit_bid(report.id, actor_for(contractor.user), proposed_cost=cost, estimated_days=days, notes="Includes resurfacing")


class TestSubmitBid:
    def test_verified_contractors_submit_preferred_bids(self, validated_report, make_contractor):
        verified = make_contractor("Verified Roads", is_verified=True)
        regular = make_contractor("Quick Fix")

        assert _bid(verified, validated_report).is_preferred is True
        assert _bid(regular, validated_report).is_preferred is False
        history = ReportHistory.query.filter_by(report_id=validated_report.id, action="BID_SUBMITTED").count()
        assert history == 2

    def test_one_pending_bid_per_contractor(self, validated_report, make_contractor):
        contractor = make_contractor()
        _bid(contractor, validated_report)
        with pytest.raises(ConflictError):
            _bid(contractor, validated_report, cost=4000.0)

    def test_blocked_contractor_cannot_bid(self, validated_report, make_contractor):
        contractor = make_contractor()
        contractor.is_blocked = True
        db.session.commit()
        with pytest.raises(AuthorizationError):
            _bid(contractor, validated_report)

    def test_account_without_profile(self, validated_report, make_user):
        with pytest.raises(NotFoundError):
            bidding.submit_bid(validated_report.id, actor_for(make_user("CONTRACTOR")), proposed_cost=10, estimated_days=1)

    def test_duplicate_reports_take_no_bids(self, citizen, ward, make_report, make_contractor):
        report = make_report(citizen, ward, status=ReportStatus.DUPLICATE)
        with pytest.raises(ConflictError):
            _bid(make_contractor(), report)

    def test_statistics(self, admin, validated_report, make_contractor):
        _bid(make_contractor("A", is_verified=True), validated_report, cost=3000.0)
        _bid(make_contractor("B"), validated_report, cost=5000.0)

        result = bidding.list_bids(validated_report.id, actor_for(admin))

        assert result["statistics"] == {
            "total_bids": 2,
            "avg_cost": 4000.0,
            "lowest_cost": 3000.0,
            "highest_cost": 5000.0,
            "preferred_bids": 1,
        }
        assert result["bids"][0].is_preferred is True


class TestAcceptBid:
    def test_accepts_one_and_rejects_siblings(self, admin, validated_report, make_contractor):
        winner = _bid(make_contractor("Winner"), validated_report, cost=4500.0, days=5)
        loser = _bid(make_contractor("Runner Up"), validated_report, cost=6000.0)

        assignment = bidding.accept_bid(validated_report.id, winner.id, JUSTIFICATION, actor_for(admin))

        assert db.session.get(Bid, winner.id).status == "ACCEPTED"
        assert db.session.get(Bid, loser.id).status == "REJECTED"
        assert Bid.query.filter_by(report_id=validated_report.id, status="ACCEPTED").count() == 1
        assert assignment.agreed_cost == 4500.0
        assert assignment.bid_id == winner.id
        assert abs(assignment.deadline_at - (datetime.utcnow() + timedelta(days=5))) < timedelta(minutes=1)
        assert db.session.get(Report, validated_report.id).status == ReportStatus.ASSIGNED
        audit = AuditLog.query.filter_by(entity_type="BID", entity_id=winner.id, action_type="ASSIGNED").one()
        assert audit.justification == JUSTIFICATION

    def test_second_acceptance_is_a_conflict(self, admin, validated_report, make_contractor):
        first = _bid(make_contractor("First"), validated_report)
        second = _bid(make_contractor("Second"), validated_report)
        bidding.accept_bid(validated_report.id, first.id, JUSTIFICATION, actor_for(admin))

        with pytest.raises(ConflictError):
            bidding.accept_bid(validated_report.id, second.id, JUSTIFICATION, actor_for(admin))

        # A late pending bid cannot displace the accepted one either.
        late = Bid(report_id=validated_report.id, contractor_id=second.contractor_id, proposed_cost=100.0, estimated_days=2)
        db.session.add(late)
        db.session.commit()
        with pytest.raises(ConflictError):
            bidding.accept_bid(validated_report.id, late.id, JUSTIFICATION, actor_for(admin))
        assert Bid.query.filter_by(report_id=validated_report.id, status="ACCEPTED").count() == 1
        assert Assignment.query.filter_by(report_id=validated_report.id).count() == 1

    def test_bid_must_belong_to_report(self, admin, citizen, ward, make_report, validated_report, make_contractor):
        other = make_report(citizen, ward, status=ReportStatus.VALIDATED, title="Other")
        bid = _bid(make_contractor(), other)
        with pytest.raises(ConflictError):
            bidding.accept_bid(validated_report.id, bid.id, JUSTIFICATION, actor_for(admin))

    def test_justification_required(self, admin, validated_report, make_contractor):
        bid = _bid(make_contractor(), validated_report)
        with pytest.raises(ValidationError):
            bidding.accept_bid(validated_report.id, bid.id, "ok", actor_for(admin))
        assert db.session.get(Bid, bid.id).status == "PENDING"


class TestDirectAssignment:
    def test_requires_an_assignee(self, admin, validated_report):
        with pytest.raises(ValidationError):
            bidding.assign_report(validated_report.id, actor_for(admin), JUSTIFICATION)

    def test_assigned_reports_cannot_be_reassigned(self, admin, validated_report, make_contractor):
        contractor = make_contractor()
        bidding.assign_report(validated_report.id, actor_for(admin), JUSTIFICATION, contractor_id=contractor.id)
        with pytest.raises(ConflictError):
            bidding.assign_report(validated_report.id, actor_for(admin), JUSTIFICATION, contractor_id=contractor.id)

    def test_past_deadline_is_invalid(self, admin, validated_report, make_contractor):
        with pytest.raises(ValidationError):
            bidding.assign_report(
                validated_report.id,
                actor_for(admin),
                JUSTIFICATION,
                contractor_id=make_contractor().id,
                deadline=datetime.utcnow() - timedelta(days=1),
            )

    def test_cancel_returns_report_to_validated(self, admin, validated_report, make_contractor):
        bid = _bid(make_contractor(), validated_report)
        assignment = bidding.accept_bid(validated_report.id, bid.id, JUSTIFICATION, actor_for(admin))

        bidding.cancel_assignment(assignment.id, JUSTIFICATION, actor_for(admin))

        assert db.session.get(Assignment, assignment.id).status == "CANCELLED"
        assert db.session.get(Bid, bid.id).status == "REJECTED"
        assert db.session.get(Report, validated_report.id).status == ReportStatus.VALIDATED


class TestCompletion:
    @pytest.fixture
    def work(self, admin, validated_report, make_contractor):
        contractor = make_contractor()
        assignment = bidding.assign_report(validated_report.id, actor_for(admin), JUSTIFICATION, contractor_id=contractor.id)
        return contractor, assignment

    def test_start_moves_report_in_progress(self, work, validated_report):
        contractor, assignment = work
        bidding.start_assignment(assignment.id, actor_for(contractor.user))

        assert db.session.get(Assignment, assignment.id).status == "IN_PROGRESS"
        assert db.session.get(Report, validated_report.id).status == ReportStatus.IN_PROGRESS

    def test_other_contractors_cannot_start(self, work, make_contractor):
        _, assignment = work
        intruder = make_contractor("Intruder")
        with pytest.raises(AuthorizationError):
            bidding.start_assignment(assignment.id, actor_for(intruder.user))

    def test_approved_proof_completes_work(self, admin, work, validated_report):
        contractor, assignment = work
        bidding.start_assignment(assignment.id, actor_for(contractor.user))
        proof = bidding.submit_proof(
            assignment.id, actor_for(contractor.user), notes="Resurfaced", media_urls=["https://cdn.example.org/after.jpg"]
        )

        reviewed = bidding.review_proof(proof.id, True, JUSTIFICATION, actor_for(admin))

        assert reviewed.status == "APPROVED"
        report = db.session.get(Report, validated_report.id)
        assert report.status == ReportStatus.COMPLETED
        assert report.completed_at is not None
        assert db.session.get(Assignment, assignment.id).status == "COMPLETED"
        assert contractor.completed_jobs == 1
        with pytest.raises(ConflictError):
            bidding.review_proof(proof.id, True, JUSTIFICATION, actor_for(admin))

    def test_rejected_proof_keeps_work_open(self, admin, work):
        contractor, assignment = work
        proof = bidding.submit_proof(assignment.id, actor_for(contractor.user), notes="Done")
        with pytest.raises(ConflictError):
            bidding.submit_proof(assignment.id, actor_for(contractor.user), notes="Done again")

        bidding.review_proof(proof.id, False, JUSTIFICATION, actor_for(admin))

        assert db.session.get(Assignment, assignment.id).status == "ASSIGNED"
        resubmitted = bidding.submit_proof(assignment.id, actor_for(contractor.user), notes="Fixed the edges")
        assert resubmitted.status == "PENDING"
        assert CompletionProof.query.filter_by(assignment_id=assignment.id).count() == 2

    def test_closing_a_report_ends_its_open_work(self, admin, work, validated_report):
        contractor, assignment = work
        bidding.start_assignment(assignment.id, actor_for(contractor.user))

        lifecycle.transition_status(validated_report.id, "CLOSED", JUSTIFICATION, actor_for(admin))

        ended = db.session.get(Assignment, assignment.id)
        assert ended.status == "CANCELLED"
        assert ended.cancel_reason == JUSTIFICATION
        assert AuditLog.query.filter_by(entity_type="ASSIGNMENT", entity_id=assignment.id, action_type="CANCELLED").count() == 1
        with pytest.raises(ConflictError):
            bidding.submit_proof(assignment.id, actor_for(contractor.user), notes="Finished anyway")
        report = db.session.get(Report, validated_report.id)
        assert report.status == ReportStatus.CLOSED
        assert report.completed_at is None

    def test_pending_proof_cannot_complete_a_closed_report(self, admin, work, validated_report):
        contractor, assignment = work
        proof = bidding.submit_proof(assignment.id, actor_for(contractor.user), notes="Resurfaced")
        lifecycle.transition_status(validated_report.id, "CLOSED", JUSTIFICATION, actor_for(admin))

        with pytest.raises(ConflictError):
            bidding.review_proof(proof.id, True, JUSTIFICATION, actor_for(admin))

        assert db.session.get(CompletionProof, proof.id).status == "PENDING"
        assert db.session.get(Report, validated_report.id).status == ReportStatus.CLOSED
        assert contractor.completed_jobs == 0

    @pytest.mark.parametrize("status", [ReportStatus.CLOSED, ReportStatus.REJECTED, ReportStatus.DUPLICATE])
    def test_approval_requires_work_underway(self, admin, work, validated_report, status):
        contractor, assignment = work
        proof = bidding.submit_proof(assignment.id, actor_for(contractor.user), notes="Resurfaced")
        # Reports left in these states by older data still carry an active assignment.
        validated_report.status = status
        db.session.commit()

        with pytest.raises(ConflictError):
            bidding.review_proof(proof.id, True, JUSTIFICATION, actor_for(admin))

        assert db.session.get(Report, validated_report.id).status == status
        assert db.session.get(Assignment, assignment.id).status == "ASSIGNED"

    def test_media_links_must_be_http(self, work):
        contractor, assignment = work
        with pytest.raises(ValidationError):
            bidding.submit_proof(assignment.id, actor_for(contractor.user), media_urls=["file:///etc/passwd"])


class TestContractorBlock:
    def test_block_cancels_active_work(self, admin, validated_report, make_contractor):
        contractor = make_contractor()
        bid = _bid(contractor, validated_report)
        assignment = bidding.accept_bid(validated_report.id, bid.id, JUSTIFICATION, actor_for(admin))

        outcome = bidding.set_contractor_blocked(contractor.id, True, "Repeated safety violations on site.", actor_for(admin))

        assert outcome.cascade_failed is False
        assert [a.id for a in outcome.cancelled_assignments] == [assignment.id]
        assert contractor.is_blocked is True
        assert contractor.blocked_by == admin.id
        cancelled = db.session.get(Assignment, assignment.id)
        assert cancelled.status == "CANCELLED"
        assert cancelled.cancel_reason == bidding.BLOCK_CANCEL_REASON
        assert db.session.get(Bid, bid.id).status == "REJECTED"
        assert db.session.get(Report, validated_report.id).status == ReportStatus.VALIDATED
        assert AuditLog.query.filter_by(entity_type="CONTRACTOR", entity_id=contractor.id, action_type="BLOCKED").count() == 1
        assert AuditLog.query.filter_by(entity_type="ASSIGNMENT", entity_id=assignment.id, action_type="CANCELLED").count() == 1
        system_entry = ReportHistory.query.filter_by(report_id=validated_report.id, action="ASSIGNMENT_CANCELLED").one()
        assert system_entry.is_system_generated is True
        assert system_entry.actor_id == "SYSTEM"

    def test_blocking_twice_is_a_conflict(self, admin, make_contractor):
        contractor = make_contractor()
        bidding.set_contractor_blocked(contractor.id, True, JUSTIFICATION, actor_for(admin))
        with pytest.raises(ConflictError):
            bidding.set_contractor_blocked(contractor.id, True, JUSTIFICATION, actor_for(admin))

    def test_unblock_clears_block_fields(self, admin, make_contractor):
        contractor = make_contractor()
        bidding.set_contractor_blocked(contractor.id, True, JUSTIFICATION, actor_for(admin))
        outcome = bidding.set_contractor_blocked(contractor.id, False, "Appeal upheld after review.", actor_for(admin))

        assert outcome.contractor.is_blocked is False
        assert outcome.contractor.block_reason is None
        assert outcome.cancelled_assignments == []

    def test_moderators_cannot_block(self, ctx, make_user, make_contractor):
        moderator = make_user("MODERATOR")
        with pytest.raises(AuthorizationError):
            bidding.set_contractor_blocked(make_contractor().id, True, JUSTIFICATION, actor_for(moderator))

    def test_blocked_contractor_cannot_be_assigned(self, admin, validated_report, make_contractor):
        contractor = make_contractor()
        bidding.set_contractor_blocked(contractor.id, True, JUSTIFICATION, actor_for(admin))
        with pytest.raises(ConflictError):
            bidding.assign_report(validated_report.id, actor_for(admin), JUSTIFICATION, contractor_id=contractor.id)
