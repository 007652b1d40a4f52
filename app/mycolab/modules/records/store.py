"""
Append-only storage primitives for record groups, versions and the amendment log.

Only inserts and reads live here. The "current" version of a group is always
the row with the highest version number; nothing stores or flips a flag.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.mycolab.utils import new_id

from .errors import RecordGroupNotFound
from .models import AmendmentLogEntry, RecordGroup, RecordVersion

if TYPE_CHECKING:
    from app.mycolab.models import User


def get_group(s: Session, record_group_id: str, *, for_update: bool = False) -> RecordGroup:
    """
    Load a group or raise RecordGroupNotFound.

    for_update takes a row lock where the backend supports it (Postgres), which
    serializes amendments to the same group. SQLite drops the clause; the unique
    (record_group_id, version) constraint still rejects the losing writer.
    """
    stmt = select(RecordGroup).where(RecordGroup.id == record_group_id)
    if for_update:
        stmt = stmt.with_for_update()
    group = s.execute(stmt).scalar_one_or_none()
    if group is None:
        raise RecordGroupNotFound(record_group_id)
    return group


def load_versions(s: Session, record_group_id: str) -> list[RecordVersion]:
    """All versions of a group in storage order (ascending version)."""
    return list(
        s.execute(
            select(RecordVersion)
            .where(RecordVersion.record_group_id == record_group_id)
            .order_by(RecordVersion.version.asc())
        ).scalars()
    )


def current_version(s: Session, record_group_id: str) -> RecordVersion:
    row = s.execute(
        select(RecordVersion)
        .where(RecordVersion.record_group_id == record_group_id)
        .order_by(RecordVersion.version.desc())
        .limit(1)
    ).scalar_one_or_none()
    if row is None:
        raise RecordGroupNotFound(record_group_id)
    return row


def current_versions(
    s: Session,
    *,
    entity_type: str | None = None,
    include_archived: bool = True,
    limit: int | None = None,
    offset: int = 0,
) -> list[tuple[RecordGroup, RecordVersion]]:
    """
    Head version of every group (optionally one entity type), newest groups first.
    Filtering and paging run in SQL so a page only loads the rows it returns.
    """
    heads = (
        select(RecordVersion.record_group_id, func.max(RecordVersion.version).label("head"))
        .group_by(RecordVersion.record_group_id)
        .subquery()
    )
    stmt = (
        select(RecordGroup, RecordVersion)
        .join(heads, heads.c.record_group_id == RecordGroup.id)
        .join(
            RecordVersion,
            (RecordVersion.record_group_id == heads.c.record_group_id)
            & (RecordVersion.version == heads.c.head),
        )
        .order_by(RecordGroup.created_at.desc(), RecordGroup.id.asc())
    )
    if entity_type:
        stmt = stmt.where(RecordGroup.entity_type == entity_type)
    if not include_archived:
        stmt = stmt.where(RecordVersion.amendment_type != "void")
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return [(g, v) for g, v in s.execute(stmt).all()]


def load_log_entries(s: Session, record_group_id: str) -> list[AmendmentLogEntry]:
    return list(
        s.execute(
            select(AmendmentLogEntry)
            .where(AmendmentLogEntry.record_group_id == record_group_id)
            .order_by(AmendmentLogEntry.amended_at.asc(), AmendmentLogEntry.id.asc())
        ).scalars()
    )


def log_entries_for_version(s: Session, version_id: str) -> list[AmendmentLogEntry]:
    return list(
        s.execute(
            select(AmendmentLogEntry)
            .where(AmendmentLogEntry.new_record_id == version_id)
            .order_by(AmendmentLogEntry.id.asc())
        ).scalars()
    )


def insert_group(s: Session, *, entity_type: str, created_at: datetime, user: "User | None") -> RecordGroup:
    group = RecordGroup(
        id=new_id(),
        entity_type=entity_type,
        created_at=created_at,
        created_by_user_id=user.id if user else None,
    )
    s.add(group)
    return group


def insert_version(
    s: Session,
    group: RecordGroup,
    *,
    version: int,
    amendment_type: str,
    amendment_reason: str | None,
    fields: dict[str, Any],
    valid_from: datetime,
    user: "User | None",
) -> RecordVersion:
    row = RecordVersion(
        id=new_id(),
        record_group_id=group.id,
        version=version,
        amendment_type=amendment_type,
        amendment_reason=amendment_reason,
        valid_from=valid_from,
        fields=dict(fields),
        created_by_user_id=user.id if user else None,
    )
    s.add(row)
    return row


def insert_log_entry(
    s: Session,
    new_version: RecordVersion,
    *,
    changes_summary: dict[str, Any],
    user: "User | None",
    reason_payload: dict[str, Any] | None = None,
    merged_from_group_id: str | None = None,
) -> AmendmentLogEntry:
    entry = AmendmentLogEntry(
        id=new_id(),
        record_group_id=new_version.record_group_id,
        new_record_id=new_version.id,
        amendment_type=new_version.amendment_type,
        amended_by=user.id if user else None,
        amended_by_email=user.email if user else None,
        amended_at=new_version.valid_from,
        changes_summary=dict(changes_summary),
        reason=new_version.amendment_reason or "",
        reason_payload=reason_payload,
        merged_from_group_id=merged_from_group_id,
    )
    s.add(entry)
    return entry
