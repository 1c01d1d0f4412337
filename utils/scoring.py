"""Read-time scoring for triage views. Scores are never persisted."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select

from models import Report, ReportStatus, ReportSubscription

SEVERITY_WEIGHT = 20
UPVOTE_WEIGHT = 2
SUBSCRIBER_WEIGHT = 5

AGE_BONUSES = ((1, 5), (3, 3), (7, 1))
STATUS_BONUSES = {ReportStatus.OPEN: 3, ReportStatus.VALIDATED: 2}
UPVOTE_BONUS_CAP = 5


def priority_score(report: Report, subscriber_count: Optional[int] = None) -> int:
    if subscriber_count is None:
        subscriber_count = report.subscriber_count
    return (
        (report.severity or 0) * SEVERITY_WEIGHT
        + (report.upvotes or 0) * UPVOTE_WEIGHT
        + subscriber_count * SUBSCRIBER_WEIGHT
    )


def priority_expression():
    """SQL equivalent of :func:`priority_score` for ordering admin listings."""
    subscribers = (
        select(func.count(ReportSubscription.id))
        .where(ReportSubscription.report_id == Report.id)
        .correlate(Report)
        .scalar_subquery()
    )
    return Report.severity * SEVERITY_WEIGHT + Report.upvotes * UPVOTE_WEIGHT + subscribers * SUBSCRIBER_WEIGHT


def urgency_score(report: Report, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    score = float(report.severity or 0)

    if report.created_at:
        age_days = (now - report.created_at).total_seconds() / 86400
        for limit, bonus in AGE_BONUSES:
            if age_days < limit:
                score += bonus
                break

    score += STATUS_BONUSES.get(report.status, 0)
    score += min(report.upvotes or 0, UPVOTE_BONUS_CAP)
    return int(round(max(0.0, min(100.0, score))))


def priority_bucket(upvotes: int) -> str:
    if upvotes >= 10:
        return "high"
    if upvotes >= 5:
        return "medium"
    return "low"
