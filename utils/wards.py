"""Ward registry and ward-scoped report views."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import func, or_

from extensions import db
from models import Department, Report, ReportStatus, Ward
from utils.analytics import timeframe_start
from utils.audit_trail import Fact, record_facts
from utils.errors import ConflictError, ValidationError
from utils.identity import WARD_MANAGER_ROLES, Actor, require_role
from utils.policy import commit_mutation, get_or_404
from utils.scoring import urgency_score
from utils.security import clean_text


def create_ward(actor: Actor, *, name: str, state: str, district: Optional[str] = None) -> Ward:
    require_role(actor, WARD_MANAGER_ROLES, action="create wards")
    name = clean_text(name, 150)
    state = clean_text(state, 100)
    district = clean_text(district, 100) or None
    if not name or not state:
        raise ValidationError("Name and state are required.", details={"fields": ["name", "state"]})
    if Ward.query.filter_by(name=name, state=state, district=district).first():
        raise ConflictError("A ward with this name already exists in that location.")

    ward = Ward(name=name, state=state, district=district)
    db.session.add(ward)
    commit_mutation("ward_create", ward_name=name)

    location = f"{state}, {district}" if district else state
    current_app.logger.info("ward_created", extra={"ward_id": ward.id, "ward_name": name})
    record_facts(
        Fact(
            actor=actor,
            description=f'Ward "{name}" created in {location}',
            entity_type="WARD",
            entity_id=ward.id,
            audit_action="CREATED",
            new_value={"name": name, "state": state, "district": district},
        )
    )
    return ward


def create_department(actor: Actor, *, name: str, ward_id: Optional[str] = None, official_email: Optional[str] = None) -> Department:
    require_role(actor, WARD_MANAGER_ROLES, action="create departments")
    name = clean_text(name, 255)
    if not name:
        raise ValidationError("Department name is required.", details={"field": "name"})
    ward = get_or_404(Ward, ward_id, "Ward") if ward_id else None
    department = Department(name=name, ward_id=ward.id if ward else None, official_email=clean_text(official_email, 255) or None)
    db.session.add(department)
    commit_mutation("department_create", department_name=name)
    return department


def list_wards(state: Optional[str] = None, district: Optional[str] = None, search: Optional[str] = None, include_stats: bool = False) -> list[dict]:
    query = Ward.query
    if state:
        query = query.filter(Ward.state == state)
    if district:
        query = query.filter(Ward.district == district)
    if search:
        term = f"%{search}%"
        query = query.filter(or_(Ward.name.ilike(term), Ward.state.ilike(term), Ward.district.ilike(term)))
    wards = query.order_by(Ward.state.asc(), Ward.name.asc()).all()

    results = []
    week_ago = datetime.utcnow() - timedelta(days=7)
    for ward in wards:
        payload = ward.to_dict()
        if include_stats:
            rows = db.session.query(Report.status, func.count(Report.id)).filter(Report.ward_id == ward.id).group_by(Report.status).all()
            payload["report_count"] = sum(count for _, count in rows)
            payload["status_distribution"] = {status.value: count for status, count in rows}
            payload["recent_reports"] = ward.reports.filter(Report.created_at > week_ago).count()
        results.append(payload)
    return results


def ward_reports(ward_id: str, filters: Optional[dict] = None, limit: int = 20, offset: int = 0) -> dict:
    ward = get_or_404(Ward, ward_id, "Ward")
    filters = filters or {}
    query = Report.query.filter(Report.ward_id == ward.id)
    if filters.get("status"):
        status = ReportStatus.parse(filters["status"])
        if status is None:
            raise ValidationError("Unknown report status.", details={"field": "status"})
        query = query.filter(Report.status == status)
    if filters.get("min_severity"):
        query = query.filter(Report.severity >= int(filters["min_severity"]))

    total = query.count()
    reports = query.order_by(Report.created_at.desc()).offset(offset).limit(limit).all()
    now = datetime.utcnow()
    items = []
    for report in reports:
        assignment = report.active_assignment
        items.append(
            {
                "report_id": report.id,
                "title": report.title,
                "status": report.status.value,
                "severity": report.severity,
                "urgency_score": urgency_score(report, now),
                "created_at": report.created_at.isoformat() if report.created_at else None,
                "department": report.department.name if report.department else None,
                "assignment": {"status": assignment.status, "contractor": assignment.contractor.business_name if assignment.contractor else None}
                if assignment
                else None,
                "location": {"latitude": report.latitude, "longitude": report.longitude, "address": report.address},
            }
        )
    return {
        "ward": ward.to_dict(),
        "reports": items,
        "pagination": {"total": total, "limit": limit, "offset": offset, "pages": -(-total // limit) if limit else 0},
    }


def ward_analytics(ward_id: str, timeframe: Optional[str] = None) -> dict:
    ward = get_or_404(Ward, ward_id, "Ward")
    key, start = timeframe_start(timeframe)

    total = Report.query.filter(Report.ward_id == ward.id).count()
    recent = Report.query.filter(Report.ward_id == ward.id, Report.created_at >= start).count()
    by_status = db.session.query(Report.status, func.count(Report.id)).filter(Report.ward_id == ward.id).group_by(Report.status).all()
    by_severity = db.session.query(Report.severity, func.count(Report.id)).filter(Report.ward_id == ward.id).group_by(Report.severity).all()
    completed = Report.query.filter(
        Report.ward_id == ward.id,
        Report.status == ReportStatus.COMPLETED,
        Report.created_at >= start,
    ).all()

    resolution_days = [
        ((report.completed_at or report.updated_at) - report.created_at).total_seconds() / 86400 for report in completed
    ]
    avg_resolution = round(sum(resolution_days) / len(resolution_days), 1) if resolution_days else 0
    return {
        "ward": ward.to_dict(),
        "overview": {
            "total_reports": total,
            "recent_reports": recent,
            "completion_rate": round(len(completed) / total * 100, 2) if total else 0,
            "avg_resolution_days": avg_resolution,
            "timeframe": key,
        },
        "distributions": {
            "status": {status.value: count for status, count in by_status},
            "severity": {str(severity): count for severity, count in by_severity},
        },
    }
