"""record versioning, amendment log and disposal outcomes

Revision ID: 0002b3c4d5e6
Revises: 0001a2b3c4d5
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "0002b3c4d5e6"
down_revision: Union[str, Sequence[str], None] = "0001a2b3c4d5"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(inspect(bind).get_table_names())

    if "record_groups" not in existing_tables:
        op.create_table(
            "record_groups",
            sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
            sa.Column("entity_type", sa.String(length=32), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column(
                "created_by_user_id",
                sa.Integer(),
                sa.ForeignKey("users.id", ondelete="SET NULL"),
                nullable=True,
            ),
        )
        op.create_index("idx_record_groups_entity_type", "record_groups", ["entity_type"])

    if "record_versions" not in existing_tables:
        op.create_table(
            "record_versions",
            sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
            sa.Column(
                "record_group_id",
                sa.String(length=32),
                sa.ForeignKey("record_groups.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("amendment_type", sa.String(length=16), nullable=False),
            sa.Column("amendment_reason", sa.String(length=512), nullable=True),
            sa.Column("valid_from", sa.DateTime(timezone=False), nullable=False),
            sa.Column("fields", sa.JSON(), nullable=False),
            sa.Column(
                "created_by_user_id",
                sa.Integer(),
                sa.ForeignKey("users.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.UniqueConstraint("record_group_id", "version", name="uq_record_version"),
        )
        op.create_index("idx_record_versions_group", "record_versions", ["record_group_id"])

    if "amendment_log" not in existing_tables:
        op.create_table(
            "amendment_log",
            sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
            sa.Column(
                "record_group_id",
                sa.String(length=32),
                sa.ForeignKey("record_groups.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column(
                "new_record_id",
                sa.String(length=32),
                sa.ForeignKey("record_versions.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("amendment_type", sa.String(length=16), nullable=False),
            sa.Column("amended_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("amended_by_email", sa.String(length=320), nullable=True),
            sa.Column("amended_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("changes_summary", sa.JSON(), nullable=False),
            sa.Column("reason", sa.String(length=512), nullable=False),
            sa.Column("reason_payload", sa.JSON(), nullable=True),
            sa.Column(
                "merged_from_group_id",
                sa.String(length=32),
                sa.ForeignKey("record_groups.id", ondelete="RESTRICT"),
                nullable=True,
            ),
        )
        op.create_index("idx_amendment_log_group", "amendment_log", ["record_group_id"])
        op.create_index("idx_amendment_log_new_record", "amendment_log", ["new_record_id"])

    if "entity_outcomes" not in existing_tables:
        op.create_table(
            "entity_outcomes",
            sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
            sa.Column("entity_type", sa.String(length=32), nullable=False),
            sa.Column(
                "record_group_id",
                sa.String(length=32),
                sa.ForeignKey("record_groups.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column(
                "version_id",
                sa.String(length=32),
                sa.ForeignKey("record_versions.id", ondelete="RESTRICT"),
                nullable=False,
                unique=True,
            ),
            sa.Column("entity_label", sa.String(length=255), nullable=True),
            sa.Column("outcome_category", sa.String(length=16), nullable=False),
            sa.Column("outcome_code", sa.String(length=64), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column(
                "created_by_user_id",
                sa.Integer(),
                sa.ForeignKey("users.id", ondelete="SET NULL"),
                nullable=True,
            ),
        )
        op.create_index("idx_entity_outcomes_group", "entity_outcomes", ["record_group_id"])
        op.create_index("idx_entity_outcomes_entity_type", "entity_outcomes", ["entity_type"])
        op.create_index("idx_entity_outcomes_code", "entity_outcomes", ["outcome_code"])

    if "contamination_details" not in existing_tables:
        op.create_table(
            "contamination_details",
            sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
            sa.Column(
                "outcome_id",
                sa.String(length=32),
                sa.ForeignKey("entity_outcomes.id", ondelete="RESTRICT"),
                nullable=False,
                unique=True,
            ),
            sa.Column(
                "record_group_id",
                sa.String(length=32),
                sa.ForeignKey("record_groups.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("contamination_type", sa.String(length=32), nullable=True),
            sa.Column("suspected_cause", sa.String(length=32), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_contamination_details_type", "contamination_details", ["contamination_type"])


def downgrade() -> None:
    op.drop_index("idx_contamination_details_type", table_name="contamination_details")
    op.drop_table("contamination_details")
    op.drop_index("idx_entity_outcomes_code", table_name="entity_outcomes")
    op.drop_index("idx_entity_outcomes_entity_type", table_name="entity_outcomes")
    op.drop_index("idx_entity_outcomes_group", table_name="entity_outcomes")
    op.drop_table("entity_outcomes")
    op.drop_index("idx_amendment_log_new_record", table_name="amendment_log")
    op.drop_index("idx_amendment_log_group", table_name="amendment_log")
    op.drop_table("amendment_log")
    op.drop_index("idx_record_versions_group", table_name="record_versions")
    op.drop_table("record_versions")
    op.drop_index("idx_record_groups_entity_type", table_name="record_groups")
    op.drop_table("record_groups")
