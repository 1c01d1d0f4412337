"""Read models for the admin console: filtered listings, report metrics, dashboards, audit browsing."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Optional

from flask import current_app
from sqlalchemy import func, or_

from extensions import db
from models import Assignment, AuditLog, Bid, Contractor, Report, ReportStatus, ReportSubscription, Ward
from utils.errors import ValidationError
from utils.lifecycle import validate_severity
from utils.policy import get_or_404
from utils.scoring import priority_bucket, priority_expression, priority_score

TIMEFRAMES = {"7d": 7, "30d": 30, "90d": 90}
DEFAULT_TIMEFRAME = "30d"

SORTABLE_COLUMNS = {
    "created_at": Report.created_at,
    "updated_at": Report.updated_at,
    "severity": Report.severity,
    "upvotes": Report.upvotes,
    "status": Report.status,
    "title": Report.title,
}

PRIORITY_BUCKETS = {
    "high": lambda q: q.filter(Report.upvotes >= 10),
    "medium": lambda q: q.filter(Report.upvotes >= 5, Report.upvotes < 10),
    "low": lambda q: q.filter(Report.upvotes < 5),
}


def timeframe_start(timeframe: Optional[str], now: Optional[datetime] = None) -> tuple[str, datetime]:
    key = timeframe if timeframe in TIMEFRAMES else DEFAULT_TIMEFRAME
    return key, (now or datetime.utcnow()) - timedelta(days=TIMEFRAMES[key])


def _subscriber_counts(report_ids) -> Dict[str, int]:
    if not report_ids:
        return {}
    rows = (
        db.session.query(ReportSubscription.report_id, func.count(ReportSubscription.id))
        .filter(ReportSubscription.report_id.in_(report_ids))
        .group_by(ReportSubscription.report_id)
        .all()
    )
    return {report_id: count for report_id, count in rows}


def _admin_filters(filters: Dict):
    query = Report.query
    if filters.get("status"):
        status = ReportStatus.parse(filters["status"])
        if status is None:
            raise ValidationError("Unknown report status.", details={"field": "status"})
        query = query.filter(Report.status == status)
    if filters.get("ward_id"):
        query = query.filter(Report.ward_id == filters["ward_id"])
    if filters.get("department_id"):
        query = query.filter(Report.department_id == filters["department_id"])
    if filters.get("severity"):
        query = query.filter(Report.severity == validate_severity(filters["severity"]))
    if filters.get("is_spam") is not None:
        query = query.filter(Report.is_spam.is_(bool(filters["is_spam"])))
    if filters.get("is_sensitive") is not None:
        query = query.filter(Report.is_sensitive.is_(bool(filters["is_sensitive"])))
    if filters.get("assigned_to"):
        query = query.filter(Report.assignments.any(Assignment.contractor_id == filters["assigned_to"]))
    if filters.get("date_from"):
        query = query.filter(Report.created_at >= filters["date_from"])
    if filters.get("date_to"):
        query = query.filter(Report.created_at <= filters["date_to"])
    if filters.get("search"):
        term = f"%{filters['search']}%"
        query = query.filter(or_(Report.title.ilike(term), Report.description.ilike(term), Report.address.ilike(term)))
    if filters.get("priority"):
        bucket = PRIORITY_BUCKETS.get(str(filters["priority"]).lower())
        if bucket is None:
            raise ValidationError("Priority must be high, medium or low.", details={"field": "priority"})
        query = bucket(query)
    return query


def status_counts(ward_id: Optional[str] = None) -> Dict[str, int]:
    query = db.session.query(Report.status, func.count(Report.id))
    if ward_id:
        query = query.filter(Report.ward_id == ward_id)
    return {status.value: count for status, count in query.group_by(Report.status).all()}


def admin_list_reports(
    filters: Optional[Dict] = None,
    page: int = 1,
    per_page: Optional[int] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> dict:
    filters = filters or {}
    per_page = min(
        per_page or int(current_app.config.get("REPORTS_PER_PAGE", 20)),
        int(current_app.config.get("MAX_REPORTS_PER_PAGE", 100)),
    )
    query = _admin_filters(filters)

    if sort_by == "priority_score":
        order_column = priority_expression()
    elif sort_by in SORTABLE_COLUMNS:
        order_column = SORTABLE_COLUMNS[sort_by]
    else:
        raise ValidationError("Unsupported sort column.", details={"field": "sort_by", "allowed": [*SORTABLE_COLUMNS, "priority_score"]})
    ordering = order_column.asc() if sort_order == "asc" else order_column.desc()
    pagination = query.order_by(ordering, Report.created_at.desc()).paginate(page=page, per_page=per_page, error_out=False)

    subscribers = _subscriber_counts([report.id for report in pagination.items])
    items = []
    for report in pagination.items:
        payload = report.to_dict()
        payload["priority_score"] = priority_score(report, subscribers.get(report.id, 0))
        payload["priority"] = priority_bucket(report.upvotes or 0)
        payload["subscriber_count"] = subscribers.get(report.id, 0)
        items.append(payload)

    return {
        "reports": items,
        "pagination": {
            "page": pagination.page,
            "per_page": pagination.per_page,
            "total": pagination.total,
            "pages": pagination.pages,
        },
        "status_counts": status_counts(filters.get("ward_id")),
    }


def report_metrics(report: Report, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()
    costs = [cost for (cost,) in db.session.query(Bid.proposed_cost).filter(Bid.report_id == report.id).all()]
    return {
        "priority_score": priority_score(report),
        "days_open": max(0, (now - report.created_at).days) if report.created_at else 0,
        "avg_bid_amount": round(sum(costs) / len(costs), 2) if costs else 0,
        "lowest_bid": min(costs) if costs else 0,
    }


def admin_report_detail(report_id: str) -> dict:
    report = get_or_404(Report, report_id, "Report")
    payload = report.to_dict()
    payload["reporter_id"] = report.reporter_id
    payload["ward"] = report.ward.to_dict() if report.ward else None
    payload["department"] = report.department.to_dict() if report.department else None
    payload["history"] = [entry.to_dict() for entry in reversed(report.history)]
    payload["bids"] = [bid.to_dict() for bid in report.bids.order_by(Bid.proposed_cost.asc()).all()]
    payload["assignments"] = [
        {**assignment.to_dict(), "proofs": [proof.to_dict() for proof in assignment.proofs]}
        for assignment in report.assignments.order_by(Assignment.created_at.desc()).all()
    ]
    payload["moderator_actions"] = [action.to_dict() for action in report.moderator_actions.all()]
    payload["subscriber_count"] = report.subscriber_count
    payload["metrics"] = report_metrics(report)
    return payload


def dashboard_stats(ward_id: Optional[str] = None) -> dict:
    query = Report.query
    if ward_id:
        query = query.filter(Report.ward_id == ward_id)
    total = query.count()
    counts = status_counts(ward_id)
    completed = counts.get(ReportStatus.COMPLETED.value, 0)
    recent = query.order_by(Report.created_at.desc()).limit(5).all()
    return {
        "stats": {
            "total_reports": total,
            "open_reports": counts.get(ReportStatus.OPEN.value, 0),
            "in_progress_reports": counts.get(ReportStatus.IN_PROGRESS.value, 0),
            "completed_reports": completed,
            "completion_rate": round(completed / total * 100, 2) if total else 0,
        },
        "recent_reports": [report.to_dict() for report in recent],
    }


def analytics_overview(timeframe: Optional[str] = None) -> dict:
    """Platform-wide activity for the selected window, including accountability counts."""
    key, start = timeframe_start(timeframe)
    window = Report.query.filter(Report.created_at >= start)
    total = window.count()

    by_status = (
        db.session.query(Report.status, func.count(Report.id))
        .filter(Report.created_at >= start)
        .group_by(Report.status)
        .all()
    )
    by_severity = (
        db.session.query(Report.severity, func.count(Report.id))
        .filter(Report.created_at >= start)
        .group_by(Report.severity)
        .all()
    )
    top_wards = (
        db.session.query(Ward.id, Ward.name, func.count(Report.id).label("report_count"))
        .join(Report, Report.ward_id == Ward.id)
        .filter(Report.created_at >= start)
        .group_by(Ward.id, Ward.name)
        .order_by(func.count(Report.id).desc())
        .limit(10)
        .all()
    )

    completed = window.filter(Report.status == ReportStatus.COMPLETED, Report.completed_at.isnot(None)).all()
    response_hours = [(r.completed_at - r.created_at).total_seconds() / 3600 for r in completed]
    avg_response = round(sum(response_hours) / len(response_hours)) if response_hours else 0

    contractor_rows = (
        db.session.query(Contractor.id, Contractor.business_name, Contractor.avg_rating, Assignment.status)
        .join(Assignment, Assignment.contractor_id == Contractor.id)
        .filter(Assignment.created_at >= start, Assignment.status.in_(("COMPLETED", "IN_PROGRESS")))
        .all()
    )
    performance: Dict[str, dict] = {}
    for contractor_id, name, rating, status in contractor_rows:
        record = performance.setdefault(
            contractor_id,
            {"id": contractor_id, "business_name": name, "avg_rating": rating, "total_assignments": 0, "completed_assignments": 0},
        )
        record["total_assignments"] += 1
        if status == "COMPLETED":
            record["completed_assignments"] += 1

    actions_by_role = (
        db.session.query(AuditLog.actor_role, func.count(AuditLog.id))
        .filter(AuditLog.created_at >= start)
        .group_by(AuditLog.actor_role)
        .all()
    )
    return {
        "overview": {
            "total_reports": total,
            "avg_response_hours": avg_response,
            "admin_actions": sum(count for _, count in actions_by_role),
            "timeframe": key,
        },
        "reports_by_status": {status.value: count for status, count in by_status},
        "reports_by_severity": {str(severity): count for severity, count in by_severity},
        "top_wards": [{"ward_id": wid, "name": name, "report_count": count} for wid, name, count in top_wards],
        "contractor_performance": list(performance.values())[:10],
        "actions_by_role": {role or "UNKNOWN": count for role, count in actions_by_role},
    }


def audit_logs(filters: Optional[Dict] = None, page: int = 1, per_page: Optional[int] = None):
    filters = filters or {}
    per_page = per_page or int(current_app.config.get("AUDIT_LOGS_PER_PAGE", 50))
    query = AuditLog.query
    for key in ("entity_type", "entity_id", "actor_id", "action_type"):
        if filters.get(key):
            query = query.filter(getattr(AuditLog, key) == filters[key])
    if filters.get("date_from"):
        query = query.filter(AuditLog.created_at >= filters["date_from"])
    if filters.get("date_to"):
        query = query.filter(AuditLog.created_at <= filters["date_to"])
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).paginate(page=page, per_page=per_page, error_out=False)
