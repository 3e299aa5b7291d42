"""conversation states

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18

"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op


revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversation_states",
        sa.Column("session_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("flow_id", sa.String(length=64), nullable=False),
        sa.Column("current_node_id", sa.String(length=64), nullable=True),
        sa.Column(
            "bindings",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="active"
        ),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.String(length=1024), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_conversation_states_flow_id", "conversation_states", ["flow_id"]
    )
    op.create_index(
        "ix_conversation_states_status_updated_at",
        "conversation_states",
        ["status", "updated_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_conversation_states_status_updated_at", table_name="conversation_states")
    op.drop_index("ix_conversation_states_flow_id", table_name="conversation_states")
    op.drop_table("conversation_states")
