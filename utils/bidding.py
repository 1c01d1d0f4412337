"""Assignment and bidding workflow: direct assignment, bids, completion proofs, contractor blocks."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import (
    ACTIVE_ASSIGNMENT_STATUSES,
    Assignment,
    Bid,
    CompletionProof,
    Contractor,
    Department,
    Report,
    ReportStatus,
    User,
)
from utils.audit_trail import SYSTEM_ACTOR, Fact, record_facts
from utils.errors import AuthorizationError, ConflictError, NotFoundError, PersistenceError, ValidationError, WorkflowError
from utils.identity import ADMIN_ROLES, BLOCKING_ROLES, CONTRACTOR_ROLES, Actor, require_role
from utils.lifecycle import actor_fact, end_assignment
from utils.policy import commit_mutation, get_or_404, require_justification
from utils.security import clean_text

BLOCK_CANCEL_REASON = "Contractor blocked by admin"
MAX_PROOF_MEDIA = 10

UNASSIGNABLE_STATUSES = frozenset(
    {
        ReportStatus.DUPLICATE,
        ReportStatus.MERGED,
        ReportStatus.ASSIGNED,
        ReportStatus.IN_PROGRESS,
        ReportStatus.PENDING_CITIZEN_REVIEW,
        ReportStatus.COMPLETED,
    }
)
# Report statuses that mean work is underway on the active assignment.
WORK_STATUSES = frozenset({ReportStatus.ASSIGNED, ReportStatus.IN_PROGRESS, ReportStatus.PENDING_CITIZEN_REVIEW})


@dataclass
class BlockOutcome:
    contractor: Contractor
    cancelled_assignments: List[Assignment] = field(default_factory=list)
    cascade_failed: bool = False


def _locked_report(report_id: str) -> Report:
    report = Report.query.filter_by(id=str(report_id)).with_for_update().first() if report_id else None
    if report is None:
        raise NotFoundError("Report not found.", details={"id": report_id})
    return report


def _ensure_assignable(report: Report) -> None:
    if report.is_terminal or report.status in UNASSIGNABLE_STATUSES:
        raise ConflictError(
            f"Report in status {report.status.value} cannot be assigned.",
            details={"status": report.status.value},
        )
    if report.active_assignment is not None:
        raise ConflictError("Report already has an active assignment.")


def _contractor_for(actor: Actor) -> Contractor:
    require_role(actor, CONTRACTOR_ROLES, action="act as a contractor")
    contractor = Contractor.query.filter_by(user_id=actor.subject_id).first()
    if contractor is None:
        raise NotFoundError("No contractor profile is linked to this account.")
    if contractor.is_blocked:
        raise AuthorizationError("Contractor is blocked.", details={"contractor_id": contractor.id})
    return contractor


def _owned_assignment(assignment_id: str, contractor: Contractor) -> Assignment:
    assignment = get_or_404(Assignment, assignment_id, "Assignment")
    if assignment.contractor_id != contractor.id:
        raise AuthorizationError("Assignment belongs to another contractor.")
    return assignment


def _deadline(deadline: Optional[datetime], estimated_days: Optional[int], now: datetime) -> Optional[datetime]:
    if deadline is not None:
        if deadline <= now:
            raise ValidationError("Deadline must be in the future.", details={"field": "deadline"})
        return deadline
    if estimated_days:
        return now + timedelta(days=estimated_days)
    return None


def assign_report(
    report_id: str,
    actor: Actor,
    justification: str,
    *,
    contractor_id: Optional[str] = None,
    department_id: Optional[str] = None,
    deadline: Optional[datetime] = None,
    agreed_cost: Optional[float] = None,
) -> Assignment:
    require_role(actor, ADMIN_ROLES, action="assign reports")
    reason = require_justification(justification)
    if not contractor_id and not department_id:
        raise ValidationError("Provide a contractor or a department to assign.", details={"field": "contractor_id"})
    if agreed_cost is not None and agreed_cost < 0:
        raise ValidationError("Agreed cost cannot be negative.", details={"field": "agreed_cost"})
    now = datetime.utcnow()
    deadline_at = _deadline(deadline, None, now)

    report = _locked_report(report_id)
    _ensure_assignable(report)
    contractor = None
    if contractor_id:
        contractor = get_or_404(Contractor, contractor_id, "Contractor")
        if contractor.is_blocked:
            raise ConflictError("Blocked contractors cannot be assigned.", details={"contractor_id": contractor.id})
    department = get_or_404(Department, department_id, "Department") if department_id else None

    old_status = report.status
    assignment = Assignment(
        report_id=report.id,
        contractor_id=contractor.id if contractor else None,
        department_id=department.id if department else None,
        assigned_by_id=actor.subject_id,
        agreed_cost=agreed_cost,
        deadline_at=deadline_at,
        status="ASSIGNED",
    )
    db.session.add(assignment)
    report.status = ReportStatus.ASSIGNED
    if department:
        report.department_id = department.id
    commit_mutation("report_assign", report_id=report.id)

    assignee = contractor.business_name if contractor else department.name
    current_app.logger.info(
        "report_assigned",
        extra={"report_id": report.id, "assignment_id": assignment.id, "assignee": assignee, "actor_id": actor.subject_id},
    )
    record_facts(
        actor_fact(
            actor,
            report,
            f"Report assigned to {assignee}",
            history_action="REPORT_ASSIGNED",
            audit_action="ASSIGNED",
            old_status=old_status.value,
            new_status=ReportStatus.ASSIGNED.value,
            justification=reason,
            old_value={"status": old_status.value},
            new_value={
                "status": ReportStatus.ASSIGNED.value,
                "assignment_id": assignment.id,
                "contractor_id": assignment.contractor_id,
                "department_id": assignment.department_id,
            },
            metadata={"assignment_id": assignment.id, "assignee": assignee},
        )
    )
    return assignment


def submit_bid(report_id: str, actor: Actor, *, proposed_cost, estimated_days, notes: Optional[str] = None) -> Bid:
    contractor = _contractor_for(actor)
    try:
        cost = float(proposed_cost)
        days = int(estimated_days)
    except (TypeError, ValueError):
        raise ValidationError("Proposed cost and estimated days are required numbers.")
    if cost < 0:
        raise ValidationError("Proposed cost cannot be negative.", details={"field": "proposed_cost"})
    if days < 1:
        raise ValidationError("Estimated days must be at least 1.", details={"field": "estimated_days"})

    report = get_or_404(Report, report_id, "Report")
    _ensure_assignable(report)
    if Bid.query.filter_by(report_id=report.id, contractor_id=contractor.id, status="PENDING").first():
        raise ConflictError("You already have a pending bid on this report.")

    bid = Bid(
        report_id=report.id,
        contractor_id=contractor.id,
        proposed_cost=cost,
        estimated_days=days,
        is_preferred=contractor.is_verified,
        notes=clean_text(notes, 1000),
        status="PENDING",
    )
    db.session.add(bid)
    commit_mutation("bid_submit", report_id=report.id, contractor_id=contractor.id)

    current_app.logger.info("bid_submitted", extra={"report_id": report.id, "bid_id": bid.id, "proposed_cost": cost})
    record_facts(
        actor_fact(
            Actor(actor.subject_id, actor.role, contractor.business_name),
            report,
            f"Bid submitted by {contractor.business_name}",
            history_action="BID_SUBMITTED",
            entity_type="BID",
            entity_id=bid.id,
            audit_action="CREATED",
            new_value={"proposed_cost": cost, "estimated_days": days},
            metadata={"bid_id": bid.id, "proposed_cost": cost, "estimated_days": days},
        )
    )
    return bid


def list_bids(report_id: str, actor: Actor) -> dict:
    require_role(actor, ADMIN_ROLES, action="review bids")
    report = get_or_404(Report, report_id, "Report")
    bids = (
        Bid.query.filter_by(report_id=report.id)
        .order_by(Bid.is_preferred.desc(), Bid.proposed_cost.asc(), Bid.created_at.asc())
        .all()
    )
    costs = [bid.proposed_cost for bid in bids]
    stats = {
        "total_bids": len(bids),
        "avg_cost": round(sum(costs) / len(costs), 2) if costs else 0,
        "lowest_cost": min(costs) if costs else 0,
        "highest_cost": max(costs) if costs else 0,
        "preferred_bids": sum(1 for bid in bids if bid.is_preferred),
    }
    return {"report": report, "bids": bids, "statistics": stats}


def accept_bid(
    report_id: str,
    bid_id: str,
    justification: str,
    actor: Actor,
    deadline: Optional[datetime] = None,
) -> Assignment:
    """Accept one bid, reject its pending siblings, and open the assignment in a single transaction."""
    require_role(actor, ADMIN_ROLES, action="accept bids")
    reason = require_justification(justification)
    now = datetime.utcnow()

    report = _locked_report(report_id)
    bid = get_or_404(Bid, bid_id, "Bid")
    if bid.report_id != report.id:
        raise ConflictError("Bid does not belong to this report.", details={"bid_id": bid.id, "report_id": report.id})
    if bid.status != "PENDING":
        raise ConflictError(f"Bid is already {bid.status}.", details={"bid_id": bid.id})
    if Bid.query.filter_by(report_id=report.id, status="ACCEPTED").count():
        raise ConflictError("Another bid has already been accepted for this report.")
    _ensure_assignable(report)
    contractor = bid.contractor
    if contractor.is_blocked:
        raise ConflictError("Blocked contractors cannot be assigned.", details={"contractor_id": contractor.id})
    deadline_at = _deadline(deadline, bid.estimated_days, now)

    old_status = report.status
    try:
        claimed = (
            Bid.query.filter(Bid.id == bid.id, Bid.status == "PENDING")
            .update({"status": "ACCEPTED", "accepted_at": now, "accepted_by": actor.subject_id}, synchronize_session=False)
        )
        if claimed != 1:
            db.session.rollback()
            raise ConflictError("Bid was claimed by another request.", details={"bid_id": bid.id})
        rejected = (
            Bid.query.filter(Bid.report_id == report.id, Bid.id != bid.id, Bid.status == "PENDING")
            .update({"status": "REJECTED", "rejected_at": now}, synchronize_session=False)
        )
        assignment = Assignment(
            report_id=report.id,
            contractor_id=contractor.id,
            assigned_by_id=actor.subject_id,
            bid_id=bid.id,
            agreed_cost=bid.proposed_cost,
            deadline_at=deadline_at,
            status="ASSIGNED",
        )
        db.session.add(assignment)
        report.status = ReportStatus.ASSIGNED
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("bid_accept_failed", extra={"report_id": report_id, "bid_id": bid_id})
        raise PersistenceError()
    commit_mutation("bid_accept", report_id=report.id, bid_id=bid.id)

    current_app.logger.info(
        "bid_accepted",
        extra={"report_id": report.id, "bid_id": bid.id, "assignment_id": assignment.id, "rejected_bids": rejected},
    )
    record_facts(
        actor_fact(
            actor,
            report,
            f"Bid assigned to contractor {contractor.business_name}",
            history_action="BID_ASSIGNED",
            entity_type="BID",
            entity_id=bid.id,
            audit_action="ASSIGNED",
            old_status=old_status.value,
            new_status=ReportStatus.ASSIGNED.value,
            justification=reason,
            old_value={"status": "PENDING"},
            new_value={
                "status": "ACCEPTED",
                "contractor_id": contractor.id,
                "agreed_cost": assignment.agreed_cost,
                "assignment_id": assignment.id,
            },
            metadata={
                "bid_id": bid.id,
                "contractor_id": contractor.id,
                "agreed_cost": assignment.agreed_cost,
                "estimated_days": bid.estimated_days,
            },
        )
    )
    return assignment


def start_assignment(assignment_id: str, actor: Actor) -> Assignment:
    contractor = _contractor_for(actor)
    assignment = _owned_assignment(assignment_id, contractor)
    if assignment.status != "ASSIGNED":
        raise ConflictError(f"Assignment is {assignment.status}; only ASSIGNED work can be started.")

    report = assignment.report
    old_status = report.status
    assignment.status = "IN_PROGRESS"
    assignment.started_at = datetime.utcnow()
    if report.status == ReportStatus.ASSIGNED:
        report.status = ReportStatus.IN_PROGRESS
    commit_mutation("assignment_start", assignment_id=assignment.id)

    record_facts(
        actor_fact(
            Actor(actor.subject_id, actor.role, contractor.business_name),
            report,
            f"Work started by {contractor.business_name}",
            history_action="WORK_STARTED",
            entity_type="ASSIGNMENT",
            entity_id=assignment.id,
            audit_action="STATUS_CHANGED",
            old_status=old_status.value,
            new_status=report.status.value,
            old_value={"status": "ASSIGNED"},
            new_value={"status": "IN_PROGRESS"},
        )
    )
    return assignment


def submit_proof(assignment_id: str, actor: Actor, *, notes: Optional[str] = None, media_urls=None) -> CompletionProof:
    contractor = _contractor_for(actor)
    assignment = _owned_assignment(assignment_id, contractor)
    if not assignment.is_active:
        raise ConflictError(f"Assignment is {assignment.status}; proofs need active work.")
    media = [clean_text(url, 1000) for url in (media_urls or []) if url]
    if len(media) > MAX_PROOF_MEDIA:
        raise ValidationError(f"At most {MAX_PROOF_MEDIA} media links are allowed.", details={"field": "media_urls"})
    if any(not url.startswith(("http://", "https://")) for url in media):
        raise ValidationError("Media links must be http(s) URLs.", details={"field": "media_urls"})
    if not media and not (notes or "").strip():
        raise ValidationError("Provide completion notes or media links.")
    if any(proof.status == "PENDING" for proof in assignment.proofs):
        raise ConflictError("A completion proof is already awaiting review.")

    proof = CompletionProof(assignment_id=assignment.id, notes=clean_text(notes, 5000), media_urls=media, status="PENDING")
    db.session.add(proof)
    commit_mutation("proof_submit", assignment_id=assignment.id)

    record_facts(
        actor_fact(
            Actor(actor.subject_id, actor.role, contractor.business_name),
            assignment.report,
            f"Completion proof submitted by {contractor.business_name}",
            history_action="PROOF_SUBMITTED",
            entity_type="PROOF",
            entity_id=proof.id,
            audit_action="CREATED",
            new_value={"status": "PENDING", "media_count": len(media)},
            metadata={"proof_id": proof.id, "assignment_id": assignment.id},
        )
    )
    return proof


def review_proof(proof_id: str, approve: bool, justification: str, actor: Actor) -> CompletionProof:
    require_role(actor, ADMIN_ROLES, action="review completion proofs")
    reason = require_justification(justification)
    proof = get_or_404(CompletionProof, proof_id, "Proof")
    if proof.status != "PENDING":
        raise ConflictError(f"Proof has already been {proof.status.lower()}.", details={"proof_id": proof.id})
    assignment = proof.assignment
    if approve and not assignment.is_active:
        raise ConflictError(f"Assignment is {assignment.status}; the proof cannot be approved.")
    report = assignment.report
    if approve and report.status not in WORK_STATUSES:
        raise ConflictError(
            f"Report is {report.status.value}; only reports with work underway can be completed.",
            details={"status": report.status.value, "proof_id": proof.id},
        )

    now = datetime.utcnow()
    old_status = report.status
    proof.status = "APPROVED" if approve else "REJECTED"
    proof.reviewed_by = actor.subject_id
    proof.reviewed_at = now
    proof.review_notes = reason
    if approve:
        assignment.status = "COMPLETED"
        assignment.completed_at = now
        report.status = ReportStatus.COMPLETED
        if report.completed_at is None:
            report.completed_at = now
        if assignment.contractor is not None:
            assignment.contractor.completed_jobs = (assignment.contractor.completed_jobs or 0) + 1
    commit_mutation("proof_review", proof_id=proof.id, approved=approve)

    current_app.logger.info("proof_reviewed", extra={"proof_id": proof.id, "status": proof.status, "report_id": report.id})
    business_name = assignment.contractor.business_name if assignment.contractor else None
    record_facts(
        actor_fact(
            actor,
            report,
            f"Completion proof {'approved' if approve else 'rejected'}",
            history_action="PROOF_APPROVED" if approve else "PROOF_REJECTED",
            entity_type="PROOF",
            entity_id=proof.id,
            audit_action=proof.status,
            old_status=old_status.value if approve else None,
            new_status=report.status.value if approve else None,
            justification=reason,
            old_value={"status": "PENDING"},
            new_value={"status": proof.status, "reviewed_at": now.isoformat()},
            metadata={"proof_id": proof.id, "contractor": business_name},
        )
    )
    return proof


def cancel_assignment(assignment_id: str, justification: str, actor: Actor) -> Assignment:
    require_role(actor, ADMIN_ROLES, action="cancel assignments")
    reason = require_justification(justification)
    assignment = get_or_404(Assignment, assignment_id, "Assignment")
    if not assignment.is_active:
        raise ConflictError(f"Assignment is already {assignment.status}.")

    now = datetime.utcnow()
    report = assignment.report
    old_status = report.status
    old_assignment_status = end_assignment(assignment, reason, now)
    if report.status in WORK_STATUSES:
        report.status = ReportStatus.VALIDATED
    commit_mutation("assignment_cancel", assignment_id=assignment.id)

    record_facts(
        actor_fact(
            actor,
            report,
            "Assignment cancelled",
            history_action="ASSIGNMENT_CANCELLED",
            entity_type="ASSIGNMENT",
            entity_id=assignment.id,
            audit_action="CANCELLED",
            old_status=old_status.value,
            new_status=report.status.value,
            justification=reason,
            old_value={"status": old_assignment_status},
            new_value={"status": "CANCELLED", "cancel_reason": reason},
        )
    )
    return assignment


def cancel_contractor_assignments(contractor_id: str, justification: str, actor: Actor) -> List[Assignment]:
    """Cascade for a contractor block: cancel every active assignment and reopen its report for assignment."""
    now = datetime.utcnow()
    assignments = (
        Assignment.query.filter(
            Assignment.contractor_id == contractor_id,
            Assignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
        )
        .order_by(Assignment.created_at.asc())
        .all()
    )
    if not assignments:
        return []

    transitions = []
    for assignment in assignments:
        report = assignment.report
        old_status = report.status
        transitions.append((assignment, report, old_status, end_assignment(assignment, BLOCK_CANCEL_REASON, now)))
        if report.status in WORK_STATUSES:
            report.status = ReportStatus.VALIDATED
    commit_mutation("contractor_assignments_cancel", contractor_id=contractor_id, count=len(assignments))

    current_app.logger.warning(
        "contractor_assignments_cancelled",
        extra={"contractor_id": contractor_id, "assignments": [a.id for a in assignments]},
    )
    facts = []
    for assignment, report, old_status, old_assignment_status in transitions:
        facts.append(
            Fact(
                actor=SYSTEM_ACTOR,
                description=f"Assignment cancelled: {BLOCK_CANCEL_REASON}",
                report_id=report.id,
                history_action="ASSIGNMENT_CANCELLED",
                old_status=old_status.value,
                new_status=report.status.value,
                justification=justification,
                metadata={"assignment_id": assignment.id, "contractor_id": contractor_id, "blocked_by": actor.subject_id},
                is_system_generated=True,
            )
        )
        facts.append(
            Fact(
                actor=actor,
                description=BLOCK_CANCEL_REASON,
                entity_type="ASSIGNMENT",
                entity_id=assignment.id,
                audit_action="CANCELLED",
                justification=justification,
                old_value={"status": old_assignment_status},
                new_value={"status": "CANCELLED", "cancel_reason": BLOCK_CANCEL_REASON},
            )
        )
    record_facts(*facts)
    return assignments


def set_contractor_blocked(contractor_id: str, blocked: bool, justification: str, actor: Actor) -> BlockOutcome:
    require_role(actor, BLOCKING_ROLES, action="block contractors")
    reason = require_justification(justification)
    contractor = get_or_404(Contractor, contractor_id, "Contractor")
    if bool(contractor.is_blocked) == bool(blocked):
        raise ConflictError(
            f"Contractor is already {'blocked' if blocked else 'unblocked'}.",
            details={"contractor_id": contractor.id},
        )

    old_value = {"is_blocked": contractor.is_blocked, "block_reason": contractor.block_reason}
    contractor.is_blocked = bool(blocked)
    contractor.block_reason = reason if blocked else None
    contractor.blocked_at = datetime.utcnow() if blocked else None
    contractor.blocked_by = actor.subject_id if blocked else None
    commit_mutation("contractor_block", contractor_id=contractor.id, blocked=blocked)

    current_app.logger.warning(
        "contractor_block_changed",
        extra={"contractor_id": contractor.id, "blocked": bool(blocked), "actor_id": actor.subject_id},
    )
    record_facts(
        Fact(
            actor=actor,
            description=f"Contractor {'blocked' if blocked else 'unblocked'}",
            entity_type="CONTRACTOR",
            entity_id=contractor.id,
            audit_action="BLOCKED" if blocked else "UNBLOCKED",
            justification=reason,
            old_value=old_value,
            new_value={"is_blocked": contractor.is_blocked, "block_reason": contractor.block_reason, "blocked_by": contractor.blocked_by},
        )
    )

    outcome = BlockOutcome(contractor=contractor)
    if blocked:
        try:
            outcome.cancelled_assignments = cancel_contractor_assignments(contractor.id, reason, actor)
        except WorkflowError:
            # The block itself is committed; the cascade can be re-run.
            current_app.logger.exception("contractor_block_cascade_failed", extra={"contractor_id": contractor.id})
            outcome.cascade_failed = True
    return outcome


def contractor_workload(actor: Actor) -> dict:
    require_role(actor, CONTRACTOR_ROLES, action="view contractor work")
    contractor = Contractor.query.filter_by(user_id=actor.subject_id).first()
    if contractor is None:
        raise NotFoundError("No contractor profile is linked to this account.")
    assignments = contractor.assignments.order_by(Assignment.created_at.desc()).all()
    bids = contractor.bids.order_by(Bid.created_at.desc()).all()
    earned = (
        db.session.query(func.coalesce(func.sum(Assignment.agreed_cost), 0.0))
        .filter(Assignment.contractor_id == contractor.id, Assignment.status == "COMPLETED")
        .scalar()
    )
    return {
        "contractor": contractor,
        "assignments": assignments,
        "bids": bids,
        "completed_value": float(earned or 0),
    }


def register_contractor(
    actor: Actor,
    *,
    user_id: str,
    business_name: str,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    is_verified: bool = False,
) -> Contractor:
    """Link a contractor profile to an existing CONTRACTOR account."""
    require_role(actor, BLOCKING_ROLES, action="register contractors")
    user = get_or_404(User, user_id, "User")
    if user.role != "CONTRACTOR":
        raise ValidationError("Contractor profiles require a CONTRACTOR account.", details={"field": "user_id"})
    if user.contractor_profile is not None:
        raise ConflictError("This account already has a contractor profile.")
    business_name = clean_text(business_name, 255)
    if not business_name:
        raise ValidationError("Business name is required.", details={"field": "business_name"})

    contractor = Contractor(
        user_id=user.id,
        business_name=business_name,
        email=clean_text(email, 255) or user.email,
        phone=clean_text(phone, 50),
        is_verified=bool(is_verified),
    )
    db.session.add(contractor)
    commit_mutation("contractor_register", user_id=user.id)

    record_facts(
        Fact(
            actor=actor,
            description=f"Contractor {business_name} registered",
            entity_type="CONTRACTOR",
            entity_id=contractor.id,
            audit_action="CREATED",
            new_value={"business_name": business_name, "user_id": user.id, "is_verified": contractor.is_verified},
        )
    )
    return contractor
