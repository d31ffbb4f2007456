from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from teed_api.core.config import LEADERBOARD_PERIODS, Settings
from teed_api.models import Profile, ReferralChain


# Conversion rate assumed when estimating the viral coefficient (K = i * c).
VIRAL_CONVERSION_RATE = 0.4

_PERIOD_DAYS: dict[str, int | None] = {"7d": 7, "30d": 30, "all": None}


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    profile_id: str | None
    display_name: str | None
    username: str | None
    avatar_url: str | None
    referral_count: int
    is_current_user: bool


@dataclass(frozen=True)
class UserRank:
    rank: int
    referral_count: int


@dataclass(frozen=True)
class Leaderboard:
    entries: list[LeaderboardEntry]
    user_rank: UserRank | None
    period: str


def profile_public(profile: Profile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "display_name": profile.display_name,
        "username": profile.username,
        "avatar_url": profile.avatar_url,
    }


def get_referral_chain(session: Session, profile_id: str) -> dict[str, Any] | None:
    row = session.execute(
        select(ReferralChain, Profile)
        .join(Profile, Profile.id == ReferralChain.referrer_profile_id, isouter=True)
        .where(ReferralChain.referred_profile_id == profile_id)
        .limit(1)
    ).first()
    if row is None:
        return None
    chain, referrer = row
    return {
        "referrer": profile_public(referrer) if referrer is not None else None,
        "referred_at": chain.created_at,
    }


def get_referral_stats(session: Session, profile_id: str) -> dict[str, int]:
    settings = Settings()
    profile = session.get(Profile, profile_id)
    total = int(
        session.scalar(
            select(func.count(ReferralChain.id)).where(
                ReferralChain.referrer_profile_id == profile_id
            )
        )
        or 0
    )
    successful = int(profile.referrals_count or 0) if profile is not None else 0
    quota = (
        profile.invite_quota
        if profile is not None and profile.invite_quota is not None
        else settings.default_invite_quota
    )
    used = int(profile.invites_used or 0) if profile is not None else 0
    return {
        "total_referrals": total,
        "successful_referrals": successful,
        "pending_referrals": max(0, total - successful),
        "invites_remaining": max(0, int(quota) - used),
        # Only direct referrals are tracked, so depth is 0 or 1.
        "referral_chain_depth": 1 if total > 0 else 0,
    }


def get_users_referred(session: Session, profile_id: str) -> list[dict[str, Any]]:
    rows = session.execute(
        select(ReferralChain, Profile)
        .join(Profile, Profile.id == ReferralChain.referred_profile_id)
        .where(ReferralChain.referrer_profile_id == profile_id)
        .order_by(desc(ReferralChain.created_at), ReferralChain.id.asc())
    ).all()
    return [
        {
            "id": p.id,
            "display_name": p.display_name,
            "username": p.username,
            "joined_at": c.created_at,
        }
        for (c, p) in rows
    ]


def _period_since(period: str, now: datetime) -> datetime | None:
    if period not in LEADERBOARD_PERIODS:
        raise ValueError(f"invalid period: {period!r}")
    days = _PERIOD_DAYS[period]
    return now - timedelta(days=days) if days is not None else None


def _mask_display_name(name: str | None, *, privacy_mode: str, rank: int) -> str | None:
    if privacy_mode == "anonymous":
        return f"User #{rank}"
    if privacy_mode == "username_first" or not name:
        return None
    return name


def _mask_username(username: str | None, *, privacy_mode: str) -> str | None:
    if privacy_mode == "anonymous":
        return None
    return username


def get_leaderboard(
    session: Session,
    *,
    period: str,
    limit: int,
    viewer_id: str | None = None,
    privacy_mode: str = "username_first",
    show_avatars: bool = False,
    now: datetime | None = None,
) -> Leaderboard:
    """
    Rank referrers by the number of chains they own inside ``period``.

    Profiles that opted out (``show_referrer`` false) are left out. Names and
    avatars are masked per ``privacy_mode`` except on the viewer's own row.
    """
    now_dt = now or datetime.now(UTC)
    since = _period_since(period, now_dt)

    count_col = func.count(ReferralChain.id).label("referral_count")
    counts = (
        select(ReferralChain.referrer_profile_id.label("profile_id"), count_col)
        .where(ReferralChain.referrer_profile_id.is_not(None))
        .group_by(ReferralChain.referrer_profile_id)
    )
    if since is not None:
        counts = counts.where(ReferralChain.created_at >= since)
    counts_sq = counts.subquery()

    rows = session.execute(
        select(Profile, counts_sq.c.referral_count)
        .join(counts_sq, counts_sq.c.profile_id == Profile.id)
        .where(Profile.show_referrer.is_(True))
        .order_by(desc(counts_sq.c.referral_count), Profile.id.asc())
        .limit(max(1, int(limit)))
    ).all()

    show_avatar = bool(show_avatars) and privacy_mode != "anonymous"
    entries: list[LeaderboardEntry] = []
    for idx, (profile, referral_count) in enumerate(rows, start=1):
        is_viewer = bool(viewer_id) and profile.id == viewer_id
        if is_viewer:
            entries.append(
                LeaderboardEntry(
                    rank=idx,
                    profile_id=profile.id,
                    display_name=profile.display_name,
                    username=profile.username,
                    avatar_url=profile.avatar_url,
                    referral_count=int(referral_count),
                    is_current_user=True,
                )
            )
            continue
        entries.append(
            LeaderboardEntry(
                rank=idx,
                profile_id=None,
                display_name=_mask_display_name(
                    profile.display_name, privacy_mode=privacy_mode, rank=idx
                ),
                username=_mask_username(profile.username, privacy_mode=privacy_mode),
                avatar_url=profile.avatar_url if show_avatar else None,
                referral_count=int(referral_count),
                is_current_user=False,
            )
        )

    user_rank: UserRank | None = None
    if viewer_id:
        own = next((e for e in entries if e.is_current_user), None)
        if own is not None:
            user_rank = UserRank(rank=own.rank, referral_count=own.referral_count)
        else:
            viewer_count = int(
                session.scalar(
                    select(counts_sq.c.referral_count).where(
                        counts_sq.c.profile_id == viewer_id
                    )
                )
                or 0
            )
            if viewer_count > 0:
                ahead = int(
                    session.scalar(
                        select(func.count())
                        .select_from(counts_sq)
                        .join(Profile, Profile.id == counts_sq.c.profile_id)
                        .where(Profile.show_referrer.is_(True))
                        .where(counts_sq.c.referral_count > viewer_count)
                    )
                    or 0
                )
                user_rank = UserRank(rank=ahead + 1, referral_count=viewer_count)

    return Leaderboard(entries=entries, user_rank=user_rank, period=period)


def get_global_referral_stats(session: Session) -> dict[str, Any]:
    total = int(session.scalar(select(func.count(ReferralChain.id))) or 0)
    unique_referrers = int(
        session.scalar(
            select(func.count(func.distinct(ReferralChain.referrer_profile_id))).where(
                ReferralChain.referrer_profile_id.is_not(None)
            )
        )
        or 0
    )
    average = (total / unique_referrers) if unique_referrers > 0 else 0.0

    top = session.scalar(
        select(Profile)
        .where(Profile.referrals_count > 0)
        .order_by(desc(Profile.referrals_count), Profile.id.asc())
        .limit(1)
    )
    return {
        "total_referrals": total,
        "unique_referrers": unique_referrers,
        "average_referrals_per_user": round(average, 2),
        "viral_coefficient": round(average * VIRAL_CONVERSION_RATE, 2),
        "top_referrer": profile_public(top) if top is not None else None,
    }
