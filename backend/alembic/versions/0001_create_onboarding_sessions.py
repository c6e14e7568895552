"""Create onboarding_sessions.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-18

Run with:
    alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "onboarding_sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("session_token", sa.String(64), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("csrf_token", sa.String(64), nullable=True),
    )
    op.create_index("ix_onboarding_sessions_session_token", "onboarding_sessions", ["session_token"])
    op.create_index("ix_onboarding_sessions_expires_at", "onboarding_sessions", ["expires_at"])
    op.create_index("ix_onboarding_sessions_updated_at", "onboarding_sessions", ["updated_at"])
    op.create_index("ix_onboarding_sessions_ip_address", "onboarding_sessions", ["ip_address"])
    op.create_index(
        "ix_onboarding_sessions_cleanup",
        "onboarding_sessions",
        ["is_completed", "current_step", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_onboarding_sessions_cleanup", table_name="onboarding_sessions")
    op.drop_index("ix_onboarding_sessions_ip_address", table_name="onboarding_sessions")
    op.drop_index("ix_onboarding_sessions_updated_at", table_name="onboarding_sessions")
    op.drop_index("ix_onboarding_sessions_expires_at", table_name="onboarding_sessions")
    op.drop_index("ix_onboarding_sessions_session_token", table_name="onboarding_sessions")
    op.drop_table("onboarding_sessions")
