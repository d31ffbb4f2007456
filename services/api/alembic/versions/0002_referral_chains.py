"""referral chains

Revision ID: 0002_referral_chains
Revises: 0001_profiles
Create Date: 2026-09-02
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_referral_chains"
down_revision = "0001_profiles"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "referral_chains",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "referrer_profile_id",
            sa.String(),
            sa.ForeignKey("profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "referred_profile_id",
            sa.String(),
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referral_code", sa.String(length=16), nullable=True),
        sa.Column(
            "attribution_type",
            sa.String(),
            nullable=False,
            server_default="signup",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_referral_chains_referrer_profile_id",
        "referral_chains",
        ["referrer_profile_id"],
        unique=False,
    )
    # One chain per referred profile; concurrent duplicate attributions lose here.
    op.create_index(
        "ix_referral_chains_referred_profile_id",
        "referral_chains",
        ["referred_profile_id"],
        unique=True,
    )
    op.create_index(
        "ix_referral_chains_created_at",
        "referral_chains",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_referral_chains_created_at", table_name="referral_chains")
    op.drop_index("ix_referral_chains_referred_profile_id", table_name="referral_chains")
    op.drop_index("ix_referral_chains_referrer_profile_id", table_name="referral_chains")
    op.drop_table("referral_chains")
