"""Add sync.dead_letter_queue for terminally failed sync workflows.

Revision ID: 002
Revises: 001
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dead_letter_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workflow_id", sa.Text, nullable=False),
        sa.Column("entity_type", sa.Text, nullable=False),
        sa.Column("entity_id", sa.Text, nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("context", sa.JSON, nullable=True),
        sa.Column("retryable", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_retry_workflow_id", sa.Text, nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "entity_type IN ('user','organization','subscription')", name="ck_dead_letter_entity_type"
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_dead_letter_retry_count"),
        schema="sync",
    )
    op.create_index("ix_dead_letter_workflow_id", "dead_letter_queue", ["workflow_id"], schema="sync")
    op.create_index(
        "ix_dead_letter_last_retry_workflow_id", "dead_letter_queue", ["last_retry_workflow_id"], schema="sync"
    )
    op.create_index("ix_dead_letter_entity", "dead_letter_queue", ["entity_type", "entity_id"], schema="sync")
    op.create_index("ix_dead_letter_open", "dead_letter_queue", ["retryable", "resolved_at"], schema="sync")


def downgrade() -> None:
    op.drop_index("ix_dead_letter_open", table_name="dead_letter_queue", schema="sync")
    op.drop_index("ix_dead_letter_entity", table_name="dead_letter_queue", schema="sync")
    op.drop_index("ix_dead_letter_last_retry_workflow_id", table_name="dead_letter_queue", schema="sync")
    op.drop_index("ix_dead_letter_workflow_id", table_name="dead_letter_queue", schema="sync")
    op.drop_table("dead_letter_queue", schema="sync")
