"""
Amendment engine: the only writer of record versions.

Every mutation of a culture or grow goes through here and produces a new
immutable version plus an amendment log entry. Validation happens before any
write; the inserts themselves run in a SAVEPOINT so a rejected or conflicting
request leaves no trace.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.mycolab.audit import record_event
from app.mycolab.utils import utcnow

from . import store
from .errors import (
    ConcurrentModification,
    InvalidAmendmentType,
    InvalidFieldValue,
    MissingReason,
    NoOpAmendment,
    RecordArchived,
    VersionNotFound,
)
from .models import RecordGroup, RecordVersion
from .schemas import schema_for

if TYPE_CHECKING:
    from app.mycolab.models import User

logger = logging.getLogger(__name__)

# "original" is written only by create_record and "merge" only by merge().
AMENDABLE_TYPES = ("correction", "update", "void")

REASON_MAX = 512


def _require_reason(reason: str | None) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise MissingReason()
    return _check_reason_length(reason)


def _check_reason_length(reason: str, field: str = "reason") -> str:
    if len(reason) > REASON_MAX:
        raise InvalidFieldValue(field, f"must be at most {REASON_MAX} characters.")
    return reason


def _require_type(amendment_type: str | None) -> str:
    t = (amendment_type or "").strip().lower()
    if t not in AMENDABLE_TYPES:
        raise InvalidAmendmentType(amendment_type or "")
    return t


def is_archived(version: RecordVersion) -> bool:
    return version.amendment_type == "void"


def _next_valid_from(current: RecordVersion, now: datetime | None) -> datetime:
    # valid_from never runs backwards within a group, even if the clock does.
    now = now or utcnow()
    return now if now >= current.valid_from else current.valid_from


def _check_expected(group_id: str, current: RecordVersion, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != current.version:
        raise ConcurrentModification(
            group_id,
            f"Record {group_id} is at version {current.version}, not {expected_version}. Reload and try again.",
        )


def _write_version(
    s: Session,
    group: RecordGroup,
    current: RecordVersion,
    *,
    amendment_type: str,
    reason: str,
    fields: dict[str, Any],
    log_entries: list[dict[str, Any]],
    valid_from: datetime,
    user: "User | None",
) -> RecordVersion:
    """
    Append version current+1 and its log entries as one unit.

    A racing writer that already took current+1 trips uq_record_version; the
    SAVEPOINT is rolled back and the caller gets ConcurrentModification.
    """
    try:
        with s.begin_nested():
            new = store.insert_version(
                s,
                group,
                version=current.version + 1,
                amendment_type=amendment_type,
                amendment_reason=reason,
                fields=fields,
                valid_from=valid_from,
                user=user,
            )
            s.flush()
            for entry in log_entries:
                store.insert_log_entry(s, new, user=user, **entry)
            s.flush()
    except IntegrityError as e:
        logger.warning(
            "Version conflict on record %s (expected next version %s): %s",
            group.id,
            current.version + 1,
            e.orig,
        )
        raise ConcurrentModification(group.id) from e
    return new


def create_record(
    s: Session,
    entity_type: str,
    fields: dict[str, Any],
    user: "User | None",
    *,
    now: datetime | None = None,
) -> RecordVersion:
    """Create a new record group at version 1 ("original"; no reason required)."""
    schema = schema_for(entity_type)
    snapshot = schema.normalize(fields, partial=False)
    created_at = now or utcnow()

    group = store.insert_group(s, entity_type=schema.entity_type, created_at=created_at, user=user)
    s.flush()
    first = store.insert_version(
        s,
        group,
        version=1,
        amendment_type="original",
        amendment_reason=None,
        fields=snapshot,
        valid_from=created_at,
        user=user,
    )
    s.flush()

    record_event(
        s,
        actor=user,
        action="records.create",
        entity_type="RecordGroup",
        entity_id=group.id,
        metadata={
            "entity_type": group.entity_type,
            "version_id": first.id,
            "label": schema.display_label(snapshot),
        },
    )
    logger.info("Created %s record %s (version id %s)", group.entity_type, group.id, first.id)
    return first


def amend(
    s: Session,
    record_group_id: str,
    changes: dict[str, Any] | None,
    amendment_type: str,
    reason: str | None,
    user: "User | None",
    *,
    expected_version: int | None = None,
    reason_payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> RecordVersion:
    """
    Apply a correction/update/void amendment and return the new version.

    A void only ends the record's active life; it carries the current fields
    forward unchanged and rejects any field changes.

    Raises MissingReason, InvalidAmendmentType, RecordGroupNotFound,
    RecordArchived, InvalidFieldValue, NoOpAmendment or ConcurrentModification,
    always before anything is written.
    """
    reason = _require_reason(reason)
    amendment_type = _require_type(amendment_type)
    if amendment_type == "void" and changes:
        raise InvalidFieldValue("changes", "a void amendment cannot change fields.")

    group = store.get_group(s, record_group_id, for_update=True)
    current = store.current_version(s, group.id)
    if is_archived(current):
        raise RecordArchived(group.id)
    _check_expected(group.id, current, expected_version)

    schema = schema_for(group.entity_type)
    normalized = schema.normalize(changes, partial=True)
    summary = schema.diff(current.fields, normalized)
    if not summary and amendment_type != "void":
        raise NoOpAmendment()

    merged = {**current.fields, **normalized}
    valid_from = _next_valid_from(current, now)
    new = _write_version(
        s,
        group,
        current,
        amendment_type=amendment_type,
        reason=reason,
        fields=merged,
        log_entries=[{"changes_summary": summary, "reason_payload": reason_payload}],
        valid_from=valid_from,
        user=user,
    )

    record_event(
        s,
        actor=user,
        action="records.amend",
        entity_type="RecordGroup",
        entity_id=group.id,
        reason=reason,
        metadata={
            "amendment_type": amendment_type,
            "version": new.version,
            "version_id": new.id,
            "changes": summary,
        },
    )
    logger.info(
        "Amended record %s: %s -> version %s (%d field(s) changed)",
        group.id,
        amendment_type,
        new.version,
        len(summary),
    )
    return new


def archive(
    s: Session,
    record_group_id: str,
    reason: str | None,
    user: "User | None",
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> RecordVersion:
    """Void the record without touching its fields."""
    return amend(
        s,
        record_group_id,
        {},
        "void",
        reason,
        user,
        expected_version=expected_version,
        now=now,
    )


def restore_version(
    s: Session,
    record_group_id: str,
    version_id: str,
    reason: str | None,
    user: "User | None",
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> RecordVersion:
    """
    Bring back the field values of an earlier version as a new "update" version.
    History is not rewritten; the restored values simply become the newest snapshot.
    """
    reason = _require_reason(reason)
    group = store.get_group(s, record_group_id)
    target = next((v for v in store.load_versions(s, group.id) if v.id == version_id), None)
    if target is None:
        raise VersionNotFound(group.id, version_id)
    return amend(
        s,
        group.id,
        dict(target.fields),
        "update",
        f"Restored version {target.version}: {reason}",
        user,
        expected_version=expected_version,
        now=now,
    )


def merge(
    s: Session,
    target_group_id: str,
    source_group_ids: list[str],
    changes: dict[str, Any] | None,
    reason: str | None,
    user: "User | None",
    *,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> RecordVersion:
    """
    Fold duplicate records into a target record.

    The target gets a "merge" version (changes may be empty) with one log entry
    per source; each source gets a "void" version pointing at the target, so
    it drops out of active listings while its history stays queryable.
    """
    reason = _require_reason(reason)
    source_ids = [sid for sid in dict.fromkeys(source_group_ids or []) if sid]
    if not source_ids:
        raise NoOpAmendment("Choose at least one record to merge.")
    if target_group_id in source_ids:
        raise NoOpAmendment("A record cannot be merged into itself.")

    # One pass in id order, so opposing merges queue on the same first lock.
    locked = {gid: store.get_group(s, gid, for_update=True) for gid in sorted({target_group_id, *source_ids})}

    target = locked[target_group_id]
    target_current = store.current_version(s, target.id)
    if is_archived(target_current):
        raise RecordArchived(target.id)
    _check_expected(target.id, target_current, expected_version)

    schema = schema_for(target.entity_type)
    normalized = schema.normalize(changes, partial=True)
    summary = schema.diff(target_current.fields, normalized)
    source_reason = _check_reason_length(f"Merged into {target.id}: {reason}")

    sources: list[tuple[RecordGroup, RecordVersion]] = []
    for sid in sorted(source_ids):
        g = locked[sid]
        if g.entity_type != target.entity_type:
            raise NoOpAmendment(f"Record {sid} is a {g.entity_type}, not a {target.entity_type}.")
        cur = store.current_version(s, g.id)
        if is_archived(cur):
            raise RecordArchived(g.id)
        sources.append((g, cur))

    valid_from = _next_valid_from(target_current, now)
    for _, cur in sources:
        valid_from = max(valid_from, cur.valid_from)

    merged_fields = {**target_current.fields, **normalized}
    # Target and sources land together or not at all.
    with s.begin_nested():
        new = _write_version(
            s,
            target,
            target_current,
            amendment_type="merge",
            reason=reason,
            fields=merged_fields,
            log_entries=[
                {"changes_summary": summary, "merged_from_group_id": g.id}
                for g, _ in sources
            ],
            valid_from=valid_from,
            user=user,
        )
        for g, cur in sources:
            _write_version(
                s,
                g,
                cur,
                amendment_type="void",
                reason=source_reason,
                fields=dict(cur.fields),
                log_entries=[{"changes_summary": {}, "reason_payload": {"merged_into": target.id}}],
                valid_from=valid_from,
                user=user,
            )

    record_event(
        s,
        actor=user,
        action="records.merge",
        entity_type="RecordGroup",
        entity_id=target.id,
        reason=reason,
        metadata={
            "version": new.version,
            "version_id": new.id,
            "sources": [g.id for g, _ in sources],
            "changes": summary,
        },
    )
    logger.info("Merged %d record(s) into %s -> version %s", len(sources), target.id, new.version)
    return new
