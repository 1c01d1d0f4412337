"""Report lifecycle: citizen intake, status transitions, engagement, and public tracking."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from flask import current_app

from extensions import db
from models import (
    TERMINAL_STATUSES,
    Department,
    Report,
    ReportHistory,
    ReportReaction,
    ReportStatus,
    ReportSubscription,
    Ward,
)
from utils.audit_trail import Fact, record_facts
from utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from utils.identity import ADMIN_ROLES, CITIZEN_ROLES, Actor, require_role
from utils.policy import commit_mutation, get_or_404, require_justification
from utils.security import clean_text

# Targets that only a dedicated workflow may set.
RESERVED_TARGETS: Dict[ReportStatus, str] = {
    ReportStatus.COMPLETED: "Reports are completed by approving a completion proof.",
    ReportStatus.ASSIGNED: "Reports are assigned through direct assignment or bid acceptance.",
    ReportStatus.DUPLICATE: "Reports are marked duplicate through moderation.",
}

S = ReportStatus
STRICT_TRANSITIONS: Dict[ReportStatus, frozenset] = {
    S.OPEN: frozenset({S.VALIDATED, S.IN_BIDDING, S.MERGED, S.REJECTED, S.CLOSED, S.AUTO_CLOSED}),
    S.DUPLICATE: frozenset({S.OPEN, S.MERGED, S.REJECTED, S.CLOSED}),
    S.MERGED: frozenset({S.CLOSED}),
    S.VALIDATED: frozenset({S.IN_BIDDING, S.REJECTED, S.CLOSED, S.AUTO_CLOSED}),
    S.IN_BIDDING: frozenset({S.VALIDATED, S.REJECTED, S.CLOSED}),
    S.ASSIGNED: frozenset({S.IN_PROGRESS, S.VALIDATED, S.CLOSED}),
    S.IN_PROGRESS: frozenset({S.PENDING_CITIZEN_REVIEW, S.VALIDATED, S.CLOSED}),
    S.PENDING_CITIZEN_REVIEW: frozenset({S.IN_PROGRESS, S.CLOSED}),
    S.COMPLETED: frozenset({S.VERIFIED, S.IN_PROGRESS, S.CLOSED}),
}

CLOSING_STATUSES = frozenset({ReportStatus.CLOSED, ReportStatus.AUTO_CLOSED})
# Entering one of these ends any contractor work still open on the report.
WORK_ENDING_STATUSES = TERMINAL_STATUSES | {ReportStatus.MERGED}
EDITABLE_FIELDS = ("title", "description", "severity", "address")
ANONYMOUS_ACTOR = Actor("ANONYMOUS", "CITIZEN", "Anonymous citizen")


def actor_fact(actor: Actor, report: Report, description: str, **kwargs) -> Fact:
    """Fact bound to ``report`` on both sinks; callers pick the actions."""
    kwargs.setdefault("entity_type", "REPORT")
    kwargs.setdefault("entity_id", report.id)
    return Fact(actor=actor, description=description, report_id=report.id, **kwargs)


def validate_severity(value) -> int:
    try:
        severity = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Severity must be an integer between 1 and 5.", details={"field": "severity"})
    if severity < 1 or severity > 5:
        raise ValidationError("Severity must be between 1 and 5.", details={"field": "severity", "value": severity})
    return severity


def _validate_coordinates(latitude, longitude) -> tuple[float, float]:
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("Latitude and longitude are required numbers.", details={"field": "location"})
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError("Coordinates are out of range.", details={"latitude": lat, "longitude": lng})
    return lat, lng


def end_assignment(assignment, reason: str, now: datetime) -> str:
    """Cancel ``assignment`` and release its accepted bid. Returns the prior assignment status."""
    previous = assignment.status
    assignment.status = "CANCELLED"
    assignment.cancelled_at = now
    assignment.cancel_reason = (reason or "")[:500]
    if assignment.bid is not None and assignment.bid.status == "ACCEPTED":
        assignment.bid.status = "REJECTED"
        assignment.bid.rejected_at = now
    return previous


def _unlink_duplicate(report: Report) -> Optional[Report]:
    """Clear the duplicate link of a report returning to the workflow; returns the former canonical report."""
    canonical = db.session.get(Report, report.duplicate_of_id) if report.duplicate_of_id else None
    report.is_duplicate = False
    report.duplicate_of_id = None
    if canonical is not None and canonical.duplicate_count:
        canonical.duplicate_count -= 1
    return canonical


def check_transition(report: Report, target: ReportStatus) -> None:
    """Raise ConflictError when ``report`` may not move to ``target``."""
    current = report.status
    if current in TERMINAL_STATUSES:
        raise ConflictError(
            f"Report is in terminal status {current.value} and cannot change status.",
            details={"status": current.value},
        )
    if current == target:
        raise ConflictError(f"Report is already {target.value}.", details={"status": current.value})
    if target in RESERVED_TARGETS:
        raise ConflictError(RESERVED_TARGETS[target], details={"target_status": target.value})
    if current_app.config.get("STRICT_STATUS_TRANSITIONS") and target not in STRICT_TRANSITIONS.get(current, frozenset()):
        raise ConflictError(
            f"Transition {current.value} -> {target.value} is not allowed.",
            details={"status": current.value, "target_status": target.value},
        )


def transition_status(report_id: str, target_status, justification: str, actor: Actor) -> Report:
    require_role(actor, ADMIN_ROLES, action="change report status")
    target = ReportStatus.parse(target_status)
    if target is None:
        raise ValidationError(
            "Unknown report status.",
            details={"field": "status", "value": target_status, "allowed": [s.value for s in ReportStatus]},
        )
    reason = require_justification(justification)
    report = get_or_404(Report, report_id, "Report")
    check_transition(report, target)

    now = datetime.utcnow()
    old_status = report.status
    old_value = {"status": old_status.value}
    report.status = target
    if target in CLOSING_STATUSES and report.closed_at is None:
        report.closed_at = now

    # A DUPLICATE that is reopened or rejected no longer counts against its original; MERGED keeps the link.
    former_canonical = None
    if old_status == ReportStatus.DUPLICATE and target != ReportStatus.MERGED:
        old_value["duplicate_of_id"] = report.duplicate_of_id
        former_canonical = _unlink_duplicate(report)

    ended = report.active_assignment if target in WORK_ENDING_STATUSES else None
    ended_from = end_assignment(ended, reason, now) if ended is not None else None
    commit_mutation("report_status_change", report_id=report.id, target=target.value)

    current_app.logger.info(
        "report_status_changed",
        extra={"report_id": report.id, "old_status": old_status.value, "new_status": target.value, "actor_id": actor.subject_id},
    )
    new_value = {"status": target.value}
    if former_canonical is not None:
        new_value["duplicate_of_id"] = None
    facts = [
        actor_fact(
            actor,
            report,
            f"Status changed from {old_status.value} to {target.value}",
            history_action="STATUS_CHANGED",
            audit_action="STATUS_CHANGED",
            old_status=old_status.value,
            new_status=target.value,
            justification=reason,
            old_value=old_value,
            new_value=new_value,
        )
    ]
    if ended is not None:
        facts.append(
            Fact(
                actor=actor,
                description=f"Assignment cancelled: report moved to {target.value}",
                entity_type="ASSIGNMENT",
                entity_id=ended.id,
                audit_action="CANCELLED",
                justification=reason,
                old_value={"status": ended_from},
                new_value={"status": "CANCELLED", "cancel_reason": ended.cancel_reason},
                metadata={"report_id": report.id, "contractor_id": ended.contractor_id},
            )
        )
    record_facts(*facts)
    return report


def create_report(
    actor: Actor,
    *,
    title: str,
    latitude,
    longitude,
    ward_id: str,
    description: Optional[str] = None,
    address: Optional[str] = None,
    severity=1,
    department_id: Optional[str] = None,
    is_anonymous: bool = False,
) -> Report:
    require_role(actor, CITIZEN_ROLES, action="file a report")
    title = clean_text(title, 255)
    if not title:
        raise ValidationError("Title is required.", details={"field": "title"})
    lat, lng = _validate_coordinates(latitude, longitude)
    severity = validate_severity(severity)
    ward = db.session.get(Ward, str(ward_id)) if ward_id else None
    if ward is None:
        raise ValidationError("A valid ward is required.", details={"field": "ward_id"})
    if department_id and db.session.get(Department, str(department_id)) is None:
        raise ValidationError("Unknown department.", details={"field": "department_id"})

    report = Report(
        reporter_id=actor.subject_id,
        ward_id=ward.id,
        department_id=department_id or None,
        title=title,
        description=clean_text(description, 5000),
        latitude=lat,
        longitude=lng,
        address=clean_text(address, 500),
        severity=severity,
        status=ReportStatus.OPEN,
        is_anonymous=bool(is_anonymous),
    )
    db.session.add(report)
    commit_mutation("report_create", reporter_id=actor.subject_id)

    current_app.logger.info("report_created", extra={"report_id": report.id, "ward_id": ward.id, "severity": severity})
    record_facts(
        actor_fact(
            actor,
            report,
            "Report submitted",
            history_actor=ANONYMOUS_ACTOR if report.is_anonymous else None,
            history_action="REPORT_CREATED",
            audit_action="CREATED",
            new_status=ReportStatus.OPEN.value,
            new_value={"title": report.title, "severity": severity, "ward_id": ward.id},
        )
    )
    return report


def edit_report(report_id: str, actor: Actor, changes: dict) -> Report:
    report = get_or_404(Report, report_id, "Report")
    if report.reporter_id != actor.subject_id:
        raise AuthorizationError("Only the reporter can edit this report.")
    if not report.is_citizen_editable:
        raise ConflictError(
            "Reports can only be edited while OPEN.",
            details={"status": report.status.value},
        )

    updates = {}
    if changes.get("title") is not None:
        title = clean_text(changes["title"], 255)
        if not title:
            raise ValidationError("Title cannot be empty.", details={"field": "title"})
        updates["title"] = title
    if changes.get("description") is not None:
        updates["description"] = clean_text(changes["description"], 5000)
    if changes.get("address") is not None:
        updates["address"] = clean_text(changes["address"], 500)
    if changes.get("severity") is not None:
        updates["severity"] = validate_severity(changes["severity"])

    old_value = {}
    new_value = {}
    for field_name in EDITABLE_FIELDS:
        if field_name in updates and getattr(report, field_name) != updates[field_name]:
            old_value[field_name] = getattr(report, field_name)
            new_value[field_name] = updates[field_name]
            setattr(report, field_name, updates[field_name])
    if not new_value:
        return report

    commit_mutation("report_edit", report_id=report.id)
    record_facts(
        actor_fact(
            actor,
            report,
            "Report details updated by reporter",
            history_action="REPORT_UPDATED",
            audit_action="UPDATED",
            old_value=old_value,
            new_value=new_value,
            metadata={"fields": sorted(new_value)},
        )
    )
    return report


def delete_report(report_id: str, actor: Actor) -> None:
    report = get_or_404(Report, report_id, "Report")
    is_owner = report.reporter_id == actor.subject_id
    if not is_owner and actor.role not in ADMIN_ROLES:
        raise AuthorizationError("Only the reporter or a moderator can delete this report.")
    if report.status != ReportStatus.OPEN:
        raise ConflictError("Only OPEN reports can be deleted.", details={"status": report.status.value})
    if report.duplicate_count:
        raise ConflictError(
            "Report is referenced by duplicates and cannot be deleted.",
            details={"duplicate_count": report.duplicate_count},
        )

    snapshot = {"title": report.title, "ward_id": report.ward_id, "reporter_id": report.reporter_id}
    db.session.delete(report)
    commit_mutation("report_delete", report_id=report_id)

    current_app.logger.info("report_deleted", extra={"report_id": report_id, "actor_id": actor.subject_id})
    record_facts(
        Fact(
            actor=actor,
            description="Report deleted",
            entity_type="REPORT",
            entity_id=report_id,
            audit_action="DELETED",
            old_value=snapshot,
        )
    )


def upvote_report(report_id: str, actor: Actor) -> Report:
    require_role(actor, CITIZEN_ROLES, action="upvote reports")
    report = get_or_404(Report, report_id, "Report")
    existing = ReportReaction.query.filter_by(report_id=report.id, user_id=actor.subject_id, reaction_type="UPVOTE").first()
    if existing:
        raise ConflictError("You have already upvoted this report.")

    db.session.add(ReportReaction(report_id=report.id, user_id=actor.subject_id, reaction_type="UPVOTE"))
    report.upvotes = (report.upvotes or 0) + 1
    commit_mutation("report_upvote", report_id=report.id, user_id=actor.subject_id)
    current_app.logger.info("report_upvoted", extra={"report_id": report.id, "upvotes": report.upvotes})
    return report


def subscribe(report_id: str, actor: Actor) -> ReportSubscription:
    require_role(actor, CITIZEN_ROLES, action="subscribe to reports")
    report = get_or_404(Report, report_id, "Report")
    if ReportSubscription.query.filter_by(report_id=report.id, user_id=actor.subject_id).first():
        raise ConflictError("Already subscribed to this report.")
    subscription = ReportSubscription(report_id=report.id, user_id=actor.subject_id)
    db.session.add(subscription)
    commit_mutation("report_subscribe", report_id=report.id, user_id=actor.subject_id)
    return subscription


def unsubscribe(report_id: str, actor: Actor) -> None:
    report = get_or_404(Report, report_id, "Report")
    subscription = ReportSubscription.query.filter_by(report_id=report.id, user_id=actor.subject_id).first()
    if not subscription:
        raise NotFoundError("Not subscribed to this report.")
    db.session.delete(subscription)
    commit_mutation("report_unsubscribe", report_id=report.id, user_id=actor.subject_id)


def list_reports(filters: Optional[dict] = None, page: int = 1, per_page: Optional[int] = None):
    filters = filters or {}
    limit = int(current_app.config.get("MAX_REPORTS_PER_PAGE", 100))
    per_page = min(per_page or int(current_app.config.get("REPORTS_PER_PAGE", 20)), limit)

    query = Report.query.filter(Report.is_spam.is_(False))
    if filters.get("status"):
        status = ReportStatus.parse(filters["status"])
        if status is None:
            raise ValidationError("Unknown report status.", details={"field": "status"})
        query = query.filter(Report.status == status)
    if filters.get("ward_id"):
        query = query.filter(Report.ward_id == filters["ward_id"])
    if filters.get("severity"):
        query = query.filter(Report.severity == validate_severity(filters["severity"]))
    if filters.get("reporter_id"):
        query = query.filter(Report.reporter_id == filters["reporter_id"])
    return query.order_by(Report.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)


def history_for(report_id: str, limit: Optional[int] = None) -> list[ReportHistory]:
    """Timeline entries, newest first."""
    query = ReportHistory.query.filter_by(report_id=report_id).order_by(ReportHistory.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def get_report(report_id: str) -> tuple[Report, list[ReportHistory]]:
    report = get_or_404(Report, report_id, "Report")
    limit = int(current_app.config.get("TIMELINE_PREVIEW_LIMIT", 10))
    return report, history_for(report.id, limit)


def track_report(report_id: str) -> dict:
    report = get_or_404(Report, report_id, "Report")
    assignment = report.active_assignment
    return {
        "report_id": report.id,
        "title": report.title,
        "status": report.status.value,
        "severity": report.severity,
        "upvotes": report.upvotes,
        "created_at": report.created_at.isoformat() if report.created_at else None,
        "completed_at": report.completed_at.isoformat() if report.completed_at else None,
        "closed_at": report.closed_at.isoformat() if report.closed_at else None,
        "assignment": {
            "status": assignment.status,
            "deadline_at": assignment.deadline_at.isoformat() if assignment.deadline_at else None,
        }
        if assignment
        else None,
        "timeline": [entry.to_dict() for entry in history_for(report.id)],
    }
