from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.mycolab.audit import record_event
from app.mycolab.modules.records import store
from app.mycolab.modules.records.errors import (
    CategoryMismatch,
    IrrelevantContaminationDetails,
    InvalidFieldValue,
    InvalidOutcomeCode,
    RecordGroupNotFound,
)
from app.mycolab.modules.records.models import RecordVersion
from app.mycolab.modules.records.schemas import schema_for
from app.mycolab.modules.records.service import REASON_MAX, amend
from app.mycolab.utils import isoformat, new_id

from .models import ContaminationDetail, EntityOutcome
from .vocabulary import CONTAMINATION_TYPES, OUTCOME_CATEGORIES, SUSPECTED_CAUSES, is_contamination_code, options_for

if TYPE_CHECKING:
    from app.mycolab.models import User

logger = logging.getLogger(__name__)

_NOTES_MAX = 2000


def _pick(payload: dict[str, Any], *keys: str) -> str:
    for k in keys:
        v = payload.get(k)
        if v is not None:
            return str(v).strip()
    return ""


def validate_outcome(entity_type: str, outcome: dict[str, Any] | None) -> dict[str, Any]:
    """
    Check an outcome payload against the entity type's vocabulary.
    Returns the canonical payload stored on the amendment log entry.
    """
    options = options_for(entity_type)
    if options is None:
        raise InvalidOutcomeCode(f"Entity type {entity_type!r} has no outcome vocabulary.")
    if not isinstance(outcome, dict):
        raise InvalidOutcomeCode("Choose an outcome.")

    code = _pick(outcome, "outcome_code", "outcomeCode").lower()
    option = options.get(code)
    if option is None:
        raise InvalidOutcomeCode(f"Unknown {entity_type} outcome: {code!r}." if code else "Choose an outcome.")

    category = _pick(outcome, "outcome_category", "outcomeCategory").lower()
    if category:
        if category not in OUTCOME_CATEGORIES:
            raise InvalidOutcomeCode(f"Unknown outcome category: {category!r}.")
        if category != option.category:
            raise CategoryMismatch(code, option.category, category)

    contamination_type = _pick(outcome, "contamination_type", "contaminationType").lower() or None
    suspected_cause = _pick(outcome, "suspected_cause", "suspectedCause").lower() or None
    if contamination_type or suspected_cause:
        if not is_contamination_code(code):
            raise IrrelevantContaminationDetails(code)
        if contamination_type and contamination_type not in CONTAMINATION_TYPES:
            raise InvalidOutcomeCode(f"Unknown contamination type: {contamination_type!r}.")
        if suspected_cause and suspected_cause not in SUSPECTED_CAUSES:
            raise InvalidOutcomeCode(f"Unknown suspected cause: {suspected_cause!r}.")

    notes = _pick(outcome, "notes") or None
    if notes and len(notes) > _NOTES_MAX:
        raise InvalidFieldValue("notes", f"must be at most {_NOTES_MAX} characters.")
    return {
        "outcome_code": code,
        "outcome_category": option.category,
        "notes": notes,
        "contamination_type": contamination_type,
        "suspected_cause": suspected_cause,
    }


def disposal_reason(label: str, notes: str | None) -> str:
    reason = f"Disposed: {label}"
    if notes:
        reason += f" — {notes}"
    return reason


def dispose(
    s: Session,
    entity_type: str,
    entity_id: str,
    outcome: dict[str, Any] | None,
    user: "User | None",
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> RecordVersion:
    """
    Take a culture or grow out of circulation, recording why.

    The record gets a void version whose log entry carries the outcome; an
    EntityOutcome row (plus ContaminationDetail for contamination codes) is
    stored against that version for analytics.
    """
    entity_type = (entity_type or "").strip().lower()
    payload = validate_outcome(entity_type, outcome)

    group = store.get_group(s, entity_id)
    if group.entity_type != entity_type:
        raise RecordGroupNotFound(entity_id)
    current = store.current_version(s, group.id)
    label = schema_for(entity_type).display_label(current.fields) or group.id
    reason = disposal_reason(label, payload["notes"])
    if len(reason) > REASON_MAX:
        raise InvalidFieldValue("notes", "too long to fit in the disposal reason; shorten the notes.")

    with s.begin_nested():
        version = amend(
            s,
            group.id,
            {},
            "void",
            reason,
            user,
            expected_version=expected_version,
            reason_payload=payload,
            now=now,
        )
        row = EntityOutcome(
            id=new_id(),
            entity_type=entity_type,
            record_group_id=group.id,
            version_id=version.id,
            entity_label=str(label)[:255],
            outcome_category=payload["outcome_category"],
            outcome_code=payload["outcome_code"],
            notes=payload["notes"],
            created_at=version.valid_from,
            created_by_user_id=user.id if user else None,
        )
        s.add(row)
        s.flush()
        if is_contamination_code(payload["outcome_code"]):
            s.add(
                ContaminationDetail(
                    id=new_id(),
                    outcome_id=row.id,
                    record_group_id=group.id,
                    contamination_type=payload["contamination_type"],
                    suspected_cause=payload["suspected_cause"],
                    created_at=version.valid_from,
                )
            )
            s.flush()

    record_event(
        s,
        actor=user,
        action="records.dispose",
        entity_type="RecordGroup",
        entity_id=group.id,
        reason=version.amendment_reason,
        metadata={"version_id": version.id, **payload},
    )
    logger.info(
        "Disposed %s %s as %s (%s) -> version %s",
        entity_type,
        group.id,
        payload["outcome_code"],
        payload["outcome_category"],
        version.version,
    )
    return version


def list_outcomes(
    s: Session,
    *,
    entity_type: str | None = None,
    outcome_category: str | None = None,
) -> list[EntityOutcome]:
    stmt = select(EntityOutcome).order_by(EntityOutcome.created_at.desc(), EntityOutcome.id.asc())
    if entity_type:
        stmt = stmt.where(EntityOutcome.entity_type == entity_type)
    if outcome_category:
        stmt = stmt.where(EntityOutcome.outcome_category == outcome_category)
    return list(s.execute(stmt).scalars())


def outcome_to_dict(row: EntityOutcome) -> dict[str, Any]:
    detail = row.contamination
    return {
        "id": row.id,
        "entity_type": row.entity_type,
        "record_group_id": row.record_group_id,
        "version_id": row.version_id,
        "entity_label": row.entity_label,
        "outcome_category": row.outcome_category,
        "outcome_code": row.outcome_code,
        "notes": row.notes,
        "contamination_type": detail.contamination_type if detail else None,
        "suspected_cause": detail.suspected_cause if detail else None,
        "created_at": isoformat(row.created_at),
    }
