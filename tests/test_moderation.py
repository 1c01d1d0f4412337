"""Moderation flags, escalation, and duplicate linking."""
import pytest

from conftest import JUSTIFICATION, actor_for
from extensions import db
from models import Assignment, AuditLog, ModeratorAction, Report, ReportHistory, ReportStatus
from utils import bidding, lifecycle
from utils.errors import AuthorizationError, ConflictError, ValidationError
from utils.moderation import moderate


@pytest.fixture
def moderator(ctx, make_user):
    return make_user("MODERATOR", full_name="Meena Moderator")


class TestFlags:
    def test_flag_spam_hides_report_from_public_listing(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward)

        updated, record = moderate(report.id, "FLAG_SPAM", JUSTIFICATION, actor_for(moderator))

        assert updated.is_spam is True
        assert record.old_value["is_spam"] is False
        assert record.new_value["is_spam"] is True
        assert lifecycle.list_reports({}, page=1).total == 0
        assert AuditLog.query.filter_by(entity_id=report.id, action_type="FLAG_SPAM").count() == 1

    def test_unflag_clears_both_flags(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward, is_spam=True, is_sensitive=True)
        updated, _ = moderate(report.id, "UNFLAG", JUSTIFICATION, actor_for(moderator))
        assert (updated.is_spam, updated.is_sensitive) == (False, False)

    def test_flag_updates_are_validated(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward)
        with pytest.raises(ValidationError):
            moderate(report.id, "APPROVE", JUSTIFICATION, actor_for(moderator), flag_updates={"is_spam": "yes"})
        with pytest.raises(ValidationError):
            moderate(report.id, "APPROVE", JUSTIFICATION, actor_for(moderator), flag_updates={"severity": 9})
        with pytest.raises(ValidationError):
            moderate(report.id, "APPROVE", JUSTIFICATION, actor_for(moderator), flag_updates={"status": "CLOSED"})
        assert ModeratorAction.query.count() == 0

    def test_flag_updates_apply_alongside_action(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward, severity=2)
        updated, _ = moderate(
            report.id, "MARK_SENSITIVE", JUSTIFICATION, actor_for(moderator), flag_updates={"severity": 4}
        )
        assert updated.is_sensitive is True
        assert updated.severity == 4

    def test_unknown_action(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward)
        with pytest.raises(ValidationError):
            moderate(report.id, "BURY", JUSTIFICATION, actor_for(moderator))

    def test_citizens_cannot_moderate(self, citizen, ward, make_report):
        report = make_report(citizen, ward)
        with pytest.raises(AuthorizationError):
            moderate(report.id, "FLAG_SPAM", JUSTIFICATION, actor_for(citizen))


class TestEscalate:
    def test_severity_is_capped_at_five(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward, severity=4)

        moderate(report.id, "ESCALATE", JUSTIFICATION, actor_for(moderator))
        updated, record = moderate(report.id, "ESCALATE", JUSTIFICATION, actor_for(moderator))

        assert updated.severity == 5
        assert record.old_value["severity"] == 5
        assert ModeratorAction.query.filter_by(report_id=report.id, action="ESCALATE").count() == 2


class TestDuplicates:
    def test_mark_duplicate_links_to_original(self, citizen, moderator, ward, make_report):
        original = make_report(citizen, ward, title="Original")
        copy = make_report(citizen, ward, title="Copy")

        updated, _ = moderate(copy.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=original.id)

        assert updated.status == ReportStatus.DUPLICATE
        assert updated.is_duplicate is True
        assert updated.duplicate_of_id == original.id
        assert db.session.get(Report, original.id).duplicate_count == 1
        entry = ReportHistory.query.filter_by(report_id=copy.id, action="MODERATED").one()
        assert (entry.old_status, entry.new_status) == ("OPEN", "DUPLICATE")

    def test_duplicate_chains_are_rejected(self, citizen, moderator, ward, make_report):
        original = make_report(citizen, ward, title="Original")
        copy = make_report(citizen, ward, title="Copy")
        third = make_report(citizen, ward, title="Third")
        moderate(copy.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=original.id)

        # The original already has duplicates pointing at it.
        with pytest.raises(ConflictError):
            moderate(original.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=third.id)
        # The target is itself a duplicate.
        with pytest.raises(ConflictError):
            moderate(third.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=copy.id)
        # Already a duplicate.
        with pytest.raises(ConflictError):
            moderate(copy.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=third.id)

        assert db.session.get(Report, third.id).status == ReportStatus.OPEN
        assert db.session.get(Report, original.id).duplicate_count == 1

    def test_report_cannot_duplicate_itself(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward)
        with pytest.raises(ConflictError):
            moderate(report.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=report.id)

    def test_duplicate_target_is_required(self, citizen, moderator, ward, make_report):
        report = make_report(citizen, ward)
        with pytest.raises(ValidationError):
            moderate(report.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator))

    def test_terminal_reports_cannot_become_duplicates(self, citizen, moderator, ward, make_report):
        original = make_report(citizen, ward)
        closed = make_report(citizen, ward, status=ReportStatus.CLOSED)
        with pytest.raises(ConflictError):
            moderate(closed.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=original.id)

    def test_reports_with_active_work_cannot_become_duplicates(self, citizen, moderator, admin, ward, make_report, make_contractor):
        original = make_report(citizen, ward, title="Original")
        copy = make_report(citizen, ward, title="Copy", status=ReportStatus.VALIDATED)
        assignment = bidding.assign_report(copy.id, actor_for(admin), JUSTIFICATION, contractor_id=make_contractor().id)

        with pytest.raises(ConflictError):
            moderate(copy.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=original.id)

        assert db.session.get(Report, copy.id).status == ReportStatus.ASSIGNED
        assert db.session.get(Assignment, assignment.id).status == "ASSIGNED"
        assert db.session.get(Report, original.id).duplicate_count == 0
        assert ModeratorAction.query.count() == 0

        bidding.cancel_assignment(assignment.id, JUSTIFICATION, actor_for(admin))
        updated, _ = moderate(copy.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=original.id)
        assert updated.status == ReportStatus.DUPLICATE


class TestLeavingDuplicate:
    @pytest.fixture
    def linked(self, citizen, moderator, ward, make_report):
        original = make_report(citizen, ward, title="Original")
        copy = make_report(citizen, ward, title="Copy")
        moderate(copy.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=original.id)
        return original, copy

    def test_reopening_clears_the_link(self, moderator, linked):
        original, copy = linked

        reopened = lifecycle.transition_status(copy.id, "OPEN", JUSTIFICATION, actor_for(moderator))

        assert reopened.status == ReportStatus.OPEN
        assert (reopened.is_duplicate, reopened.duplicate_of_id) == (False, None)
        assert db.session.get(Report, original.id).duplicate_count == 0
        audit = AuditLog.query.filter_by(entity_id=copy.id, action_type="STATUS_CHANGED").one()
        assert audit.old_value == {"status": "DUPLICATE", "duplicate_of_id": original.id}
        # The freed original can now be linked elsewhere.
        moderate(original.id, "MARK_DUPLICATE", JUSTIFICATION, actor_for(moderator), duplicate_of_id=copy.id)

    def test_merging_keeps_the_link(self, moderator, linked):
        original, copy = linked

        merged = lifecycle.transition_status(copy.id, "MERGED", JUSTIFICATION, actor_for(moderator))

        assert merged.duplicate_of_id == original.id
        assert merged.is_duplicate is True
        assert db.session.get(Report, original.id).duplicate_count == 1
