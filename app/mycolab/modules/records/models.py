from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from app.mycolab.models import Base
from app.mycolab.utils import new_id, utcnow

from .errors import ImmutableRecordError

AMENDMENT_TYPES = ("original", "correction", "update", "void", "merge")


class RecordGroup(Base):
    """
    Stable identity of a culture or grow across every version it ever had.
    Never updated, never deleted.
    """

    __tablename__ = "record_groups"
    __table_args__ = (
        Index("idx_record_groups_entity_type", "entity_type"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)  # "culture" | "grow"

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class RecordVersion(Base):
    """
    One immutable snapshot of a record's fields.

    valid_to and is_current are not stored: both follow from the next version
    in the group (see history.py), so there is no flag to keep in sync.
    """

    __tablename__ = "record_versions"
    __table_args__ = (
        # Version allocation is a compare-and-swap on this constraint.
        UniqueConstraint("record_group_id", "version", name="uq_record_version"),
        Index("idx_record_versions_group", "record_group_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)

    record_group_id: Mapped[str] = mapped_column(ForeignKey("record_groups.id", ondelete="RESTRICT"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)  # 1..N, contiguous

    amendment_type: Mapped[str] = mapped_column(String(16), nullable=False, default="original")
    amendment_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class AmendmentLogEntry(Base):
    """
    Why a version exists: who produced it, when, and which fields moved.
    One entry per amended version; merge versions get one per source group.
    """

    __tablename__ = "amendment_log"
    __table_args__ = (
        Index("idx_amendment_log_group", "record_group_id"),
        Index("idx_amendment_log_new_record", "new_record_id"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)

    record_group_id: Mapped[str] = mapped_column(ForeignKey("record_groups.id", ondelete="RESTRICT"), nullable=False)
    new_record_id: Mapped[str] = mapped_column(ForeignKey("record_versions.id", ondelete="RESTRICT"), nullable=False)
    amendment_type: Mapped[str] = mapped_column(String(16), nullable=False)

    amended_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    amended_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    amended_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    changes_summary: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)  # {field: {"old", "new"}}
    reason: Mapped[str] = mapped_column(String(512), nullable=False)
    reason_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)  # structured disposal outcome

    merged_from_group_id: Mapped[str | None] = mapped_column(
        ForeignKey("record_groups.id", ondelete="RESTRICT"),
        nullable=True,
    )


def _reject_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be updated.")


def _reject_delete(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only and cannot be deleted.")


for _model in (RecordGroup, RecordVersion, AmendmentLogEntry):
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)
