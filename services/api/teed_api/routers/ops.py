from __future__ import annotations

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from teed_api.core.config import Settings
from teed_api.deps import DBSession
from teed_api.metrics import referral_attribution_counts
from teed_api.referral_stats import get_global_referral_stats

router = APIRouter(prefix="/api/ops", tags=["ops"])


class TopReferrerOut(BaseModel):
    id: str
    display_name: str | None = None
    username: str | None = None
    avatar_url: str | None = None


class ReferralSummaryOut(BaseModel):
    total_referrals: int
    unique_referrers: int
    average_referrals_per_user: float
    viral_coefficient: float
    top_referrer: TopReferrerOut | None = None
    attribution_outcomes: dict[str, int]


def _require_admin(x_admin_token: str | None) -> None:
    settings = Settings()
    expected = str(settings.admin_token or "").strip()
    if not expected:
        raise HTTPException(status_code=401, detail="admin_disabled")
    if str(x_admin_token or "").strip() != expected:
        raise HTTPException(status_code=401, detail="unauthorized")


@router.get("/referrals/summary", response_model=ReferralSummaryOut)
def referrals_summary(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
    db: Session = DBSession,
) -> ReferralSummaryOut:
    _require_admin(x_admin_token)
    stats = get_global_referral_stats(db)
    top = stats.pop("top_referrer")
    return ReferralSummaryOut(
        **stats,
        top_referrer=TopReferrerOut(**top) if top else None,
        attribution_outcomes=referral_attribution_counts(),
    )
