from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Body, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from teed_api.core.config import LEADERBOARD_PERIODS, Settings
from teed_api.deps import CurrentUserId, DBSession, OptionalUserId, resolve_user_id
from teed_api.logjson import log_json
from teed_api.metrics import inc_referral_attribution
from teed_api.models import Profile
from teed_api.rate_limit import check_referral_attribute_rate_limit
from teed_api.referral_codes import ensure_referral_code, normalize_code, referral_link
from teed_api.referral_stats import (
    get_leaderboard,
    get_referral_chain,
    get_referral_stats,
    get_users_referred,
    profile_public,
)
from teed_api.referrals import (
    ERROR_ALREADY_REFERRED,
    ERROR_INVALID_CODE,
    ERROR_INVALID_INPUT,
    ERROR_PERSISTENCE,
    ERROR_SELF_REFERRAL,
    ERROR_UNAUTHENTICATED,
    ERROR_UNEXPECTED,
    AttributionResult,
    ReferralStore,
    attribute_referral,
)

router = APIRouter(prefix="/api/referral", tags=["referral"])


_FAILURE_RESPONSES: dict[str, tuple[int, str]] = {
    ERROR_INVALID_INPUT: (400, "Missing referral code"),
    ERROR_UNAUTHENTICATED: (401, "Authentication required"),
    ERROR_ALREADY_REFERRED: (400, "You have already been referred by someone"),
    ERROR_INVALID_CODE: (400, "Invalid referral code"),
    ERROR_SELF_REFERRAL: (400, "You cannot refer yourself"),
    ERROR_PERSISTENCE: (500, "Failed to complete referral attribution"),
    ERROR_UNEXPECTED: (500, "An unexpected error occurred"),
}


class ReferrerOut(BaseModel):
    id: str
    display_name: str | None = None
    username: str | None = None


class PublicProfileOut(BaseModel):
    id: str
    display_name: str | None = None
    username: str | None = None
    avatar_url: str | None = None


class ValidateCodeOut(BaseModel):
    valid: bool
    referrer: PublicProfileOut | None = None


class ReferralCodeOut(BaseModel):
    code: str
    link: str


class ReferralChainOut(BaseModel):
    referrer: PublicProfileOut | None = None
    referred_at: datetime | None = None


class ReferralStatsOut(BaseModel):
    total_referrals: int
    successful_referrals: int
    pending_referrals: int
    invites_remaining: int
    referral_chain_depth: int


class ReferredUserOut(BaseModel):
    id: str
    display_name: str | None = None
    username: str | None = None
    joined_at: datetime


class LeaderboardEntryOut(BaseModel):
    rank: int
    profile_id: str | None = None
    display_name: str | None = None
    username: str | None = None
    avatar_url: str | None = None
    referral_count: int
    is_current_user: bool = False


class UserRankOut(BaseModel):
    rank: int
    referral_count: int


class LeaderboardOut(BaseModel):
    entries: list[LeaderboardEntryOut]
    user_rank: UserRankOut | None = None
    period: str
    last_updated: datetime
    cache_ttl: int
    privacy_mode: str


def _referral_code_from(payload: Any) -> str | None:
    # Anything but a JSON object with a string code counts as a missing code.
    if not isinstance(payload, dict):
        return None
    code = payload.get("referral_code")
    return code if isinstance(code, str) else None


def _failure_response(kind: str) -> JSONResponse:
    status, message = _FAILURE_RESPONSES[kind]
    return JSONResponse(status_code=status, content={"success": False, "message": message})


def _attribution_response(result: AttributionResult) -> JSONResponse:
    if not result.success or result.referrer is None:
        return _failure_response(result.error or ERROR_UNEXPECTED)
    ref = result.referrer
    name = ref.display_name or ref.username or "a Teed.club member"
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "referrer": {
                "id": ref.id,
                "display_name": ref.display_name,
                "username": ref.username,
            },
            "message": f"You were referred by {name}!",
            "bonus_granted": bool(result.bonus_granted),
        },
    )


@router.post("/attribute")
def attribute(
    request: Request,
    payload: Any = Body(default=None),
    authorization: str | None = Header(default=None),
    db: Session = DBSession,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    referral_code = _referral_code_from(payload)

    # Body is checked before credentials: a blank code is a 400 whatever the auth state.
    if not normalize_code(referral_code):
        inc_referral_attribution(ERROR_INVALID_INPUT)
        return _failure_response(ERROR_INVALID_INPUT)

    user_id = resolve_user_id(authorization)
    if user_id is None:
        inc_referral_attribution(ERROR_UNAUTHENTICATED)
        return _failure_response(ERROR_UNAUTHENTICATED)

    check_referral_attribute_rate_limit(user_id=user_id, request=request)

    try:
        result = attribute_referral(
            ReferralStore(db),
            referral_code=referral_code,
            requesting_user_id=user_id,
            request_id=request_id,
        )
    except Exception as exc:  # noqa: BLE001
        log_json(
            "error",
            "referral_attribution_unexpected",
            request_id=request_id,
            referred_id=user_id,
            error=type(exc).__name__,
            detail=str(exc)[:400],
        )
        result = AttributionResult.failed(ERROR_UNEXPECTED)

    inc_referral_attribution("success" if result.success else str(result.error))
    return _attribution_response(result)


@router.api_route(
    "/attribute",
    methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "OPTIONS"],
    include_in_schema=False,
)
def attribute_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": "Method not allowed"},
        headers={"Allow": "POST"},
    )


@router.get("/validate", response_model=ValidateCodeOut)
def validate_code(
    code: str = Query(default="", max_length=64),
    db: Session = DBSession,
) -> ValidateCodeOut:
    clean = normalize_code(code)
    if not clean:
        return ValidateCodeOut(valid=False)
    profile = ReferralStore(db).find_profile_by_code(clean)
    if profile is None:
        return ValidateCodeOut(valid=False)
    return ValidateCodeOut(valid=True, referrer=PublicProfileOut(**profile_public(profile)))


@router.get("/code", response_model=ReferralCodeOut)
def my_referral_code(
    user_id: str = CurrentUserId,
    db: Session = DBSession,
) -> ReferralCodeOut:
    profile = db.get(Profile, user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    code = ensure_referral_code(db, profile)
    db.commit()
    return ReferralCodeOut(code=code, link=referral_link(code))


@router.get("/chain", response_model=ReferralChainOut)
def my_referral_chain(
    user_id: str = CurrentUserId,
    db: Session = DBSession,
) -> ReferralChainOut:
    found = get_referral_chain(db, user_id)
    if found is None:
        return ReferralChainOut()
    referrer = found["referrer"]
    return ReferralChainOut(
        referrer=PublicProfileOut(**referrer) if referrer else None,
        referred_at=found["referred_at"],
    )


@router.get("/stats", response_model=ReferralStatsOut)
def my_referral_stats(
    user_id: str = CurrentUserId,
    db: Session = DBSession,
) -> ReferralStatsOut:
    return ReferralStatsOut(**get_referral_stats(db, user_id))


@router.get("/referred", response_model=list[ReferredUserOut])
def users_i_referred(
    user_id: str = CurrentUserId,
    db: Session = DBSession,
) -> list[ReferredUserOut]:
    return [ReferredUserOut(**row) for row in get_users_referred(db, user_id)]


@router.get("/leaderboard", response_model=LeaderboardOut)
def leaderboard(
    response: Response,
    period: str | None = Query(default=None, max_length=8),
    limit: int | None = Query(default=None, ge=1, le=100),
    viewer_id: str | None = OptionalUserId,
    db: Session = DBSession,
) -> LeaderboardOut:
    settings = Settings()
    if not settings.leaderboard_enabled:
        raise HTTPException(status_code=403, detail="Leaderboard is currently disabled")

    period_s = str(period or settings.leaderboard_time_period).strip().lower()
    if period_s not in LEADERBOARD_PERIODS:
        raise HTTPException(
            status_code=400, detail="Invalid period. Use 7d, 30d, or all"
        )

    board = get_leaderboard(
        db,
        period=period_s,
        limit=int(limit or settings.leaderboard_size),
        viewer_id=viewer_id,
        privacy_mode=settings.leaderboard_privacy_mode,
        show_avatars=settings.leaderboard_show_avatars,
    )

    max_age = max(0, int(settings.leaderboard_cache_minutes)) * 60
    # Responses differ per viewer; only anonymous ones may be shared by caches.
    scope = "private" if viewer_id else "public"
    response.headers["Cache-Control"] = (
        f"{scope}, max-age={max_age}, stale-while-revalidate={max_age // 2}"
    )
    response.headers["X-Privacy-Mode"] = settings.leaderboard_privacy_mode

    return LeaderboardOut(
        entries=[
            LeaderboardEntryOut(
                rank=e.rank,
                profile_id=e.profile_id,
                display_name=e.display_name,
                username=e.username,
                avatar_url=e.avatar_url,
                referral_count=e.referral_count,
                is_current_user=e.is_current_user,
            )
            for e in board.entries
        ],
        user_rank=UserRankOut(
            rank=board.user_rank.rank, referral_count=board.user_rank.referral_count
        )
        if board.user_rank
        else None,
        period=board.period,
        last_updated=datetime.now(UTC),
        cache_ttl=max_age,
        privacy_mode=settings.leaderboard_privacy_mode,
    )
