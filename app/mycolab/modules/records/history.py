"""
Read side of the record store.

Versions are stored without lifecycle bounds; this module derives valid_to and
is_current from the ordered chain, so readers always see exactly one current
version per group.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.mycolab.utils import isoformat

from . import store
from .models import AmendmentLogEntry, RecordGroup, RecordVersion


@dataclass(frozen=True)
class VersionView:
    id: str
    record_group_id: str
    version: int
    amendment_type: str
    amendment_reason: str | None
    valid_from: datetime
    valid_to: datetime | None
    is_current: bool
    fields: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "record_group_id": self.record_group_id,
            "version": self.version,
            "amendment_type": self.amendment_type,
            "amendment_reason": self.amendment_reason,
            "valid_from": isoformat(self.valid_from),
            "valid_to": isoformat(self.valid_to),
            "is_current": self.is_current,
            "fields": dict(self.fields),
        }


@dataclass(frozen=True)
class CurrentRecord:
    """Current fields merged with group metadata: what an ordinary detail view shows."""

    record_group_id: str
    entity_type: str
    version: int
    version_id: str
    fields: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    is_archived: bool = False
    archived_at: datetime | None = None
    archive_reason: str | None = None
    outcome: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_group_id": self.record_group_id,
            "entity_type": self.entity_type,
            "version": self.version,
            "version_id": self.version_id,
            "fields": dict(self.fields),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "is_archived": self.is_archived,
            "archived_at": isoformat(self.archived_at),
            "archive_reason": self.archive_reason,
            "outcome": self.outcome,
        }


def log_entry_to_dict(entry: AmendmentLogEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "record_group_id": entry.record_group_id,
        "new_record_id": entry.new_record_id,
        "amendment_type": entry.amendment_type,
        "amended_by": entry.amended_by,
        "amended_by_email": entry.amended_by_email,
        "amended_at": isoformat(entry.amended_at),
        "changes_summary": dict(entry.changes_summary or {}),
        "reason": entry.reason,
        "reason_payload": entry.reason_payload,
        "merged_from_group_id": entry.merged_from_group_id,
    }


def build_views(rows: list[RecordVersion]) -> list[VersionView]:
    """Derive lifecycle bounds for rows given in ascending version order."""
    views: list[VersionView] = []
    last = len(rows) - 1
    for i, row in enumerate(rows):
        nxt = rows[i + 1] if i < last else None
        views.append(
            VersionView(
                id=row.id,
                record_group_id=row.record_group_id,
                version=row.version,
                amendment_type=row.amendment_type,
                amendment_reason=row.amendment_reason,
                valid_from=row.valid_from,
                valid_to=nxt.valid_from if nxt is not None else None,
                is_current=nxt is None,
                fields=dict(row.fields or {}),
            )
        )
    return views


def get_versions(s: Session, record_group_id: str) -> list[VersionView]:
    """All versions of a record, newest first (display order)."""
    group = store.get_group(s, record_group_id)
    views = build_views(store.load_versions(s, group.id))
    return list(reversed(views))


def get_amendment_log(s: Session, record_group_id: str) -> dict[str, list[AmendmentLogEntry]]:
    """
    Amendment log keyed by the version each entry produced.
    Values are lists: a merge version carries one entry per merged record.
    """
    group = store.get_group(s, record_group_id)
    out: dict[str, list[AmendmentLogEntry]] = {}
    for entry in store.load_log_entries(s, group.id):
        out.setdefault(entry.new_record_id, []).append(entry)
    return out


def _projection(s: Session, group: RecordGroup, head: RecordVersion) -> CurrentRecord:
    archived = head.amendment_type == "void"
    outcome = None
    if archived:
        for entry in store.log_entries_for_version(s, head.id):
            if entry.reason_payload and "outcome_code" in entry.reason_payload:
                outcome = dict(entry.reason_payload)
                break
    return CurrentRecord(
        record_group_id=group.id,
        entity_type=group.entity_type,
        version=head.version,
        version_id=head.id,
        fields=dict(head.fields or {}),
        created_at=group.created_at,
        updated_at=head.valid_from,
        is_archived=archived,
        archived_at=head.valid_from if archived else None,
        archive_reason=head.amendment_reason if archived else None,
        outcome=outcome,
    )


def get_current(s: Session, record_group_id: str) -> CurrentRecord:
    group = store.get_group(s, record_group_id)
    return _projection(s, group, store.current_version(s, group.id))


def list_current(
    s: Session,
    *,
    entity_type: str | None = None,
    include_archived: bool = False,
    limit: int | None = None,
    offset: int = 0,
) -> list[CurrentRecord]:
    """Current projection of every record; archived (voided) records are hidden unless asked for."""
    rows = store.current_versions(
        s,
        entity_type=entity_type,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    return [_projection(s, group, head) for group, head in rows]


def version_as_of(s: Session, record_group_id: str, at: datetime) -> VersionView | None:
    """The version that was current at instant `at`, or None if the record did not exist yet."""
    group = store.get_group(s, record_group_id)
    for view in build_views(store.load_versions(s, group.id)):
        if view.valid_from <= at and (view.valid_to is None or at < view.valid_to):
            return view
    return None


def verify_chain(s: Session, record_group_id: str) -> list[str]:
    """
    Check a record's chain against the store's invariants.
    Returns human-readable problems; an empty list means the chain is intact.
    """
    group = store.get_group(s, record_group_id)
    rows = store.load_versions(s, group.id)
    problems: list[str] = []
    if not rows:
        return [f"Record {group.id} has no versions."]

    logs = get_amendment_log(s, group.id)

    first = rows[0]
    if first.amendment_type != "original":
        problems.append(f"Version 1 is {first.amendment_type!r}, expected 'original'.")
    if first.valid_from != group.created_at:
        problems.append("Version 1 valid_from does not match the record's creation time.")

    for i, row in enumerate(rows):
        expected = i + 1
        if row.version != expected:
            problems.append(f"Expected version {expected}, found {row.version}.")
        if i == 0:
            continue
        prev = rows[i - 1]
        if row.valid_from < prev.valid_from:
            problems.append(f"Version {row.version} starts before version {prev.version}.")
        if not (row.amendment_reason or "").strip():
            problems.append(f"Version {row.version} has no amendment reason.")
        entries = logs.get(row.id, [])
        if not entries:
            problems.append(f"Version {row.version} has no amendment log entry.")
        for entry in entries:
            if entry.reason != (row.amendment_reason or ""):
                problems.append(f"Log entry {entry.id} reason does not match version {row.version}.")
        if row.amendment_type == "void" and i < len(rows) - 1:
            problems.append(f"Version {row.version} is void but later versions exist.")

    return problems
