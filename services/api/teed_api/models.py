from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from teed_api.db import Base


ATTRIBUTION_TYPE_SIGNUP = "signup"
ATTRIBUTION_TYPE_WAITLIST = "waitlist"
ATTRIBUTION_TYPE_INVITE_CODE = "invite_code"


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    username: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String, nullable=True)
    referral_code: Mapped[str | None] = mapped_column(
        String(16), unique=True, nullable=True, index=True
    )
    referrals_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invite_quota: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    invites_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Opt-out from the public referral leaderboard.
    show_referrer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class ReferralChain(Base):
    __tablename__ = "referral_chains"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    referrer_profile_id: Mapped[str | None] = mapped_column(
        String,
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    referred_profile_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    referral_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    attribution_type: Mapped[str] = mapped_column(
        String, nullable=False, default=ATTRIBUTION_TYPE_SIGNUP
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
