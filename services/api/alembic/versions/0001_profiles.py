"""profiles

Revision ID: 0001_profiles
Revises:
Create Date: 2026-09-02
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_profiles"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("username", sa.String(), unique=True, nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("avatar_url", sa.String(), nullable=True),
        sa.Column("referral_code", sa.String(length=16), nullable=True),
        sa.Column(
            "referrals_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("invite_quota", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("invites_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "show_referrer",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_profiles_referral_code", "profiles", ["referral_code"], unique=True
    )


def downgrade() -> None:
    op.drop_index("ix_profiles_referral_code", table_name="profiles")
    op.drop_table("profiles")
