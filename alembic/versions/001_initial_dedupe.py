"""Initial dedupe tables: records, sync jobs, groups, staged changes, merges.

Revision ID: 001_initial_dedupe
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_dedupe"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _scope_columns() -> list[sa.Column]:
    return [
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("connection_key", sa.String(255), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_scope_columns(),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("last_name", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(100), nullable=True),
        sa.Column("organization", sa.String(255), nullable=True),
        sa.Column("properties", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ingested_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "owner_id", "connection_key", "external_id", name="uq_record_scope_external_id"
        ),
    )
    op.create_index("ix_records_scope", "records", ["owner_id", "connection_key"])

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_scope_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("stage_label", sa.String(50), nullable=False),
        sa.Column("count", sa.Integer(), server_default=sa.text("0")),
        sa.Column("active_scope_key", sa.String(1536), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("export_path", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("active_scope_key", name="uq_sync_job_active_scope"),
    )
    op.create_index("ix_sync_jobs_scope", "sync_jobs", ["owner_id", "connection_key"])
    op.create_index("ix_sync_jobs_status", "sync_jobs", ["status"])

    op.create_table(
        "duplicate_groups",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_scope_columns(),
        sa.Column("member_ids", sa.JSON(), nullable=True),
        sa.Column("merged", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_duplicate_groups_scope", "duplicate_groups", ["owner_id", "connection_key"]
    )

    op.create_table(
        "staged_edits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_scope_columns(),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("field_values", sa.JSON(), nullable=True),
        sa.Column("merged_count", sa.Integer(), server_default=sa.text("0")),
        sa.Column("removed_count", sa.Integer(), server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_staged_edits_scope", "staged_edits", ["owner_id", "connection_key"])

    op.create_table(
        "staged_removals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_scope_columns(),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_staged_removals_scope", "staged_removals", ["owner_id", "connection_key"]
    )

    op.create_table(
        "merge_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        *_scope_columns(),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("primary_external_id", sa.String(64), nullable=False),
        sa.Column("secondary_external_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_merge_records_scope", "merge_records", ["owner_id", "connection_key"])
    op.create_index("ix_merge_records_group", "merge_records", ["group_id"])


def downgrade() -> None:
    for index, table in (
        ("ix_merge_records_group", "merge_records"),
        ("ix_merge_records_scope", "merge_records"),
        ("ix_staged_removals_scope", "staged_removals"),
        ("ix_staged_edits_scope", "staged_edits"),
        ("ix_duplicate_groups_scope", "duplicate_groups"),
        ("ix_sync_jobs_status", "sync_jobs"),
        ("ix_sync_jobs_scope", "sync_jobs"),
        ("ix_records_scope", "records"),
    ):
        op.drop_index(index, table_name=table)
    for table in (
        "merge_records",
        "staged_removals",
        "staged_edits",
        "duplicate_groups",
        "sync_jobs",
        "records",
    ):
        op.drop_table(table)
