from __future__ import annotations

import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from teed_api.core.config import Settings
from teed_api.models import Profile


REFERRAL_CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_MAX_ATTEMPTS = 10


def normalize_code(raw: str | None) -> str:
    return str(raw or "").strip().upper()


def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def code_exists(session: Session, code: str) -> bool:
    found = session.scalar(
        select(Profile.id).where(Profile.referral_code == code).limit(1)
    )
    return found is not None


def generate_unique_code(
    session: Session, *, max_attempts: int = REFERRAL_CODE_MAX_ATTEMPTS
) -> str:
    for _ in range(max(1, int(max_attempts))):
        code = generate_referral_code()
        if not code_exists(session, code):
            return code
    raise RuntimeError(
        f"failed to generate a unique referral code after {max_attempts} attempts"
    )


def ensure_referral_code(session: Session, profile: Profile) -> str:
    """Return the profile's code, assigning a fresh one if it has none. Caller commits."""
    existing = normalize_code(profile.referral_code)
    if existing:
        return existing
    code = generate_unique_code(session)
    profile.referral_code = code
    session.add(profile)
    return code


def referral_link(code: str) -> str:
    base = str(Settings().public_base_url or "").rstrip("/")
    return f"{base}/join?ref={code}"


def backfill_referral_codes(
    session: Session, *, limit: int = 5000, dry_run: bool = False
) -> dict[str, int]:
    profiles = session.scalars(
        select(Profile)
        .where(Profile.referral_code.is_(None))
        .order_by(Profile.created_at.asc(), Profile.id.asc())
        .limit(max(1, int(limit)))
    ).all()
    if dry_run:
        return {"missing": len(profiles), "assigned": 0}

    assigned = 0
    for profile in profiles:
        profile.referral_code = generate_unique_code(session)
        # Commit per row so the next uniqueness probe sees this code.
        session.commit()
        assigned += 1
    return {"missing": len(profiles), "assigned": assigned}
