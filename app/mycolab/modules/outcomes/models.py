from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.mycolab.models import Base
from app.mycolab.modules.records.errors import ImmutableRecordError
from app.mycolab.utils import new_id, utcnow


class EntityOutcome(Base):
    """One row per disposal, pointing at the void version it produced."""

    __tablename__ = "entity_outcomes"
    __table_args__ = (
        Index("idx_entity_outcomes_group", "record_group_id"),
        Index("idx_entity_outcomes_entity_type", "entity_type"),
        Index("idx_entity_outcomes_code", "outcome_code"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    record_group_id: Mapped[str] = mapped_column(ForeignKey("record_groups.id", ondelete="RESTRICT"), nullable=False)
    version_id: Mapped[str] = mapped_column(ForeignKey("record_versions.id", ondelete="RESTRICT"), nullable=False, unique=True)

    entity_label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome_category: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome_code: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    contamination: Mapped["ContaminationDetail | None"] = relationship(
        "ContaminationDetail",
        back_populates="outcome",
        uselist=False,
        lazy="selectin",
    )


class ContaminationDetail(Base):
    __tablename__ = "contamination_details"
    __table_args__ = (
        Index("idx_contamination_details_type", "contamination_type"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    outcome_id: Mapped[str] = mapped_column(ForeignKey("entity_outcomes.id", ondelete="RESTRICT"), nullable=False, unique=True)
    record_group_id: Mapped[str] = mapped_column(ForeignKey("record_groups.id", ondelete="RESTRICT"), nullable=False)

    contamination_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    suspected_cause: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    outcome: Mapped[EntityOutcome] = relationship("EntityOutcome", back_populates="contamination")


def _reject_change(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(f"{type(target).__name__} {target.id} is append-only.")


for _model in (EntityOutcome, ContaminationDetail):
    event.listen(_model, "before_update", _reject_change)
    event.listen(_model, "before_delete", _reject_change)
