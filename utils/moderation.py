"""Moderation of citizen reports: spam/sensitivity flags, duplicates, escalation."""
from __future__ import annotations

from typing import Optional

from flask import current_app

from extensions import db
from models import MODERATION_ACTIONS, ModeratorAction, Report, ReportStatus
from utils.audit_trail import record_facts
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.identity import ADMIN_ROLES, Actor, require_role
from utils.lifecycle import actor_fact, validate_severity
from utils.policy import commit_mutation, get_or_404, require_justification

FLAG_FIELDS = ("is_spam", "is_sensitive", "severity")
MAX_SEVERITY = 5


def _snapshot(report: Report) -> dict:
    return {
        "status": report.status.value,
        "is_spam": report.is_spam,
        "is_sensitive": report.is_sensitive,
        "severity": report.severity,
        "is_duplicate": report.is_duplicate,
        "duplicate_of_id": report.duplicate_of_id,
    }


def _clean_flag_updates(flag_updates: Optional[dict]) -> dict:
    if not flag_updates:
        return {}
    unknown = set(flag_updates) - set(FLAG_FIELDS)
    if unknown:
        raise ValidationError("Unsupported moderation flags.", details={"fields": sorted(unknown)})
    cleaned = {}
    for key in ("is_spam", "is_sensitive"):
        if flag_updates.get(key) is not None:
            if not isinstance(flag_updates[key], bool):
                raise ValidationError(f"{key} must be a boolean.", details={"field": key})
            cleaned[key] = flag_updates[key]
    if flag_updates.get("severity") is not None:
        cleaned["severity"] = validate_severity(flag_updates["severity"])
    return cleaned


def _canonical_for(report: Report, duplicate_of_id: Optional[str]) -> Report:
    if not duplicate_of_id:
        raise ValidationError("duplicate_of_id is required for MARK_DUPLICATE.", details={"field": "duplicate_of_id"})
    if str(duplicate_of_id) == report.id:
        raise ConflictError("A report cannot be a duplicate of itself.")
    if report.is_terminal:
        raise ConflictError(f"Report is {report.status.value} and cannot be marked duplicate.")
    if report.status == ReportStatus.DUPLICATE:
        raise ConflictError(
            "Report is already marked as a duplicate.",
            details={"duplicate_of_id": report.duplicate_of_id},
        )
    if report.duplicate_count:
        raise ConflictError("Report is the canonical record for other duplicates.")
    active = report.active_assignment
    if active is not None:
        raise ConflictError(
            "Report has active contractor work; cancel the assignment before marking it duplicate.",
            details={"assignment_id": active.id},
        )
    canonical = db.session.get(Report, str(duplicate_of_id))
    if canonical is None:
        raise NotFoundError("Original report not found.", details={"id": duplicate_of_id})
    if canonical.status == ReportStatus.DUPLICATE:
        raise ConflictError(
            "Target report is itself a duplicate; link to its original instead.",
            details={"duplicate_of_id": canonical.duplicate_of_id},
        )
    return canonical


def moderate(
    report_id: str,
    action: str,
    justification: str,
    actor: Actor,
    *,
    flag_updates: Optional[dict] = None,
    duplicate_of_id: Optional[str] = None,
) -> tuple[Report, ModeratorAction]:
    require_role(actor, ADMIN_ROLES, action="moderate reports")
    action = (action or "").strip().upper()
    if action not in MODERATION_ACTIONS:
        raise ValidationError(
            "Unknown moderation action.",
            details={"field": "action", "allowed": list(MODERATION_ACTIONS)},
        )
    reason = require_justification(justification)
    updates = _clean_flag_updates(flag_updates)
    report = get_or_404(Report, report_id, "Report")
    canonical = _canonical_for(report, duplicate_of_id) if action == "MARK_DUPLICATE" else None

    before = _snapshot(report)
    if action == "FLAG_SPAM":
        report.is_spam = True
    elif action == "MARK_SENSITIVE":
        report.is_sensitive = True
    elif action == "UNFLAG":
        report.is_spam = False
        report.is_sensitive = False
    elif action == "ESCALATE":
        report.severity = min((report.severity or 1) + 1, MAX_SEVERITY)
    elif action == "MARK_DUPLICATE":
        report.status = ReportStatus.DUPLICATE
        report.is_duplicate = True
        report.duplicate_of_id = canonical.id
        canonical.duplicate_count = (canonical.duplicate_count or 0) + 1
    for key, value in updates.items():
        setattr(report, key, value)
    after = _snapshot(report)

    record = ModeratorAction(
        moderator_id=actor.subject_id,
        report_id=report.id,
        action=action,
        justification=reason,
        old_value=before,
        new_value=after,
    )
    db.session.add(record)
    commit_mutation("report_moderate", report_id=report.id, action=action)

    current_app.logger.info(
        "report_moderated",
        extra={"report_id": report.id, "action": action, "actor_id": actor.subject_id},
    )
    status_changed = before["status"] != after["status"]
    description = f"Moderation action {action}"
    if canonical is not None:
        description = f"Marked as duplicate of {canonical.id}"
    record_facts(
        actor_fact(
            actor,
            report,
            description,
            history_action="MODERATED",
            audit_action=action,
            old_status=before["status"] if status_changed else None,
            new_status=after["status"] if status_changed else None,
            justification=reason,
            old_value=before,
            new_value=after,
            metadata={"moderator_action_id": record.id, "action": action},
        )
    )
    return report, record
