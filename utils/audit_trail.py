"""Dual trail writer: citizen-facing report history plus the internal audit ledger.

Workflow functions commit their entity mutation first and then hand one or more
``Fact`` records to :func:`record_facts`. Each fact is offered to every sink; the
history sink keeps facts that carry a report and a history action, the audit
sink keeps facts that carry an entity and an audit action. All rows produced
for one call are committed together.

A failed trail commit is rolled back, logged on the ``civic.audit_trail``
logger, and counted. It never propagates to the caller, because the primary
mutation has already been committed by then.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import SYSTEM_ACTOR_ID, AuditLog, ReportHistory
from utils.identity import Actor
from utils.logger import trail_logger
from utils.security import request_metadata

SYSTEM_ACTOR = Actor(SYSTEM_ACTOR_ID, "SYSTEM", "System")


@dataclass
class Fact:
    actor: Actor
    description: str
    report_id: Optional[str] = None
    history_action: Optional[str] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    audit_action: Optional[str] = None
    justification: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_system_generated: bool = False
    history_actor: Optional[Actor] = None


class HistorySink:
    name = "history"

    def accepts(self, fact: Fact) -> bool:
        return bool(fact.report_id and fact.history_action)

    def build(self, fact: Fact, meta: dict) -> ReportHistory:
        actor = fact.history_actor or fact.actor
        return ReportHistory(
            report_id=fact.report_id,
            actor_id=actor.subject_id,
            actor_name=actor.display_name or actor.label,
            action=fact.history_action,
            old_status=fact.old_status,
            new_status=fact.new_status,
            description=fact.description[:500],
            justification=fact.justification,
            extra_metadata=fact.metadata or None,
            is_system_generated=fact.is_system_generated,
        )


class AuditSink:
    name = "audit"

    def accepts(self, fact: Fact) -> bool:
        return bool(fact.entity_type and fact.entity_id and fact.audit_action)

    def build(self, fact: Fact, meta: dict) -> AuditLog:
        return AuditLog(
            actor_id=fact.actor.subject_id,
            actor_role=fact.actor.role,
            entity_type=fact.entity_type,
            entity_id=str(fact.entity_id),
            action_type=fact.audit_action,
            justification=fact.justification,
            old_value=fact.old_value,
            new_value=fact.new_value,
            ip_address=meta.get("ip_address"),
            user_agent=meta.get("user_agent"),
        )


DEFAULT_SINKS = (HistorySink(), AuditSink())


class TrailHealth:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.failures = 0

    def record_failure(self) -> int:
        with self._lock:
            self.failures += 1
            return self.failures


def init_audit_trail(app) -> None:
    app.extensions["audit_trail"] = TrailHealth()


def trail_health() -> TrailHealth:
    health = current_app.extensions.get("audit_trail")
    if health is None:
        health = current_app.extensions.setdefault("audit_trail", TrailHealth())
    return health


def record_facts(*facts: Fact, sinks: Iterable = DEFAULT_SINKS) -> bool:
    """Persist trail rows for ``facts`` in one commit; returns False when the write was dropped."""
    if not facts:
        return True
    meta = request_metadata()
    sinks = tuple(sinks)
    written: List[str] = []
    try:
        for fact in facts:
            for sink in sinks:
                if sink.accepts(fact):
                    db.session.add(sink.build(fact, meta))
                    written.append(sink.name)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        failures = trail_health().record_failure()
        trail_logger().error(
            "trail_write_failed",
            exc_info=True,
            extra={
                "failures": failures,
                "facts": [
                    {
                        "report_id": fact.report_id,
                        "entity_type": fact.entity_type,
                        "entity_id": fact.entity_id,
                        "history_action": fact.history_action,
                        "audit_action": fact.audit_action,
                        "actor_id": fact.actor.subject_id,
                    }
                    for fact in facts
                ],
            },
        )
        return False
    current_app.logger.debug("trail_written", extra={"rows": len(written)})
    return True
