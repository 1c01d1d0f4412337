"""Shared preconditions and commit handling for workflow operations."""
from __future__ import annotations

from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from utils.errors import ConflictError, NotFoundError, PersistenceError, ValidationError


def require_justification(justification: Optional[str]) -> str:
    """Return the trimmed justification or raise when it is shorter than the configured minimum."""
    minimum = int(current_app.config.get("JUSTIFICATION_MIN_LENGTH", 10))
    trimmed = (justification or "").strip()
    if len(trimmed) < minimum:
        raise ValidationError(
            f"Justification must be at least {minimum} characters.",
            details={"field": "justification", "min_length": minimum, "length": len(trimmed)},
        )
    return trimmed


def get_or_404(model, entity_id, label: str):
    entity = db.session.get(model, str(entity_id)) if entity_id else None
    if entity is None:
        raise NotFoundError(f"{label} not found.", details={"id": entity_id})
    return entity


def commit_mutation(event: str, **extra) -> None:
    """Commit the pending unit of work, translating store failures into workflow errors."""
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        current_app.logger.warning(f"{event}_stale", extra=extra)
        raise ConflictError("The record was modified by another request. Reload and retry.")
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning(f"{event}_integrity_conflict", extra=extra)
        raise ConflictError("The change conflicts with the current state of the record.")
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception(f"{event}_failed", extra=extra)
        raise PersistenceError()
