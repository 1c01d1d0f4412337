"""Every status-changing admin operation enforces the ten-character justification floor."""
from types import SimpleNamespace

import pytest

from conftest import JUSTIFICATION, actor_for
from extensions import db
from models import Assignment, AuditLog, CompletionProof, Contractor, ModeratorAction, Report, ReportHistory, ReportStatus
from utils import bidding
from utils.errors import ValidationError
from utils.moderation import moderate

NINE = "123456789"
TEN = "1234567890"


@pytest.fixture
def world(admin, citizen, ward, make_report, make_contractor):
    return SimpleNamespace(
        admin=actor_for(admin),
        report=make_report(citizen, ward, status=ReportStatus.VALIDATED),
        contractor=make_contractor(),
    )


def _assign(world):
    return bidding.assign_report(world.report.id, world.admin, JUSTIFICATION, contractor_id=world.contractor.id)


def _assign_op(world):
    def run(justification):
        bidding.assign_report(world.report.id, world.admin, justification, contractor_id=world.contractor.id)

    return run, lambda: Assignment.query.filter_by(report_id=world.report.id).count() == 1


def _moderate_op(world):
    def run(justification):
        moderate(world.report.id, "FLAG_SPAM", justification, world.admin)

    return run, lambda: db.session.get(Report, world.report.id).is_spam is True


def _review_proof_op(world):
    assignment = _assign(world)
    proof = bidding.submit_proof(assignment.id, actor_for(world.contractor.user), notes="Pothole patched")

    def run(justification):
        bidding.review_proof(proof.id, True, justification, world.admin)

    return run, lambda: db.session.get(CompletionProof, proof.id).status == "APPROVED"


def _cancel_op(world):
    assignment = _assign(world)

    def run(justification):
        bidding.cancel_assignment(assignment.id, justification, world.admin)

    return run, lambda: db.session.get(Assignment, assignment.id).status == "CANCELLED"


def _block_op(world):
    def run(justification):
        bidding.set_contractor_blocked(world.contractor.id, True, justification, world.admin)

    return run, lambda: db.session.get(Contractor, world.contractor.id).is_blocked is True


OPERATIONS = [_assign_op, _moderate_op, _review_proof_op, _cancel_op, _block_op]
OPERATION_IDS = ["assign", "moderate", "review_proof", "cancel_assignment", "block_contractor"]


def _trail_rows():
    return ReportHistory.query.count(), AuditLog.query.count(), ModeratorAction.query.count()


@pytest.mark.parametrize("prepare", OPERATIONS, ids=OPERATION_IDS)
@pytest.mark.parametrize("justification", [NINE, f"   {NINE}   "])
def test_nine_characters_change_nothing(world, prepare, justification):
    run, changed = prepare(world)
    before = _trail_rows()

    with pytest.raises(ValidationError) as excinfo:
        run(justification)

    assert excinfo.value.details["length"] == 9
    db.session.expire_all()
    assert not changed()
    assert _trail_rows() == before


@pytest.mark.parametrize("prepare", OPERATIONS, ids=OPERATION_IDS)
def test_ten_characters_are_enough(world, prepare):
    run, changed = prepare(world)
    history_before, audit_before, _ = _trail_rows()

    run(TEN)

    assert changed()
    assert AuditLog.query.count() > audit_before
    assert AuditLog.query.filter_by(justification=TEN).count() >= 1
    if prepare is not _block_op:
        assert ReportHistory.query.count() > history_before
