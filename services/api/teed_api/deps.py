from __future__ import annotations

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from teed_api.core.security import decode_token
from teed_api.db import SessionLocal


def get_db() -> Session:
    with SessionLocal() as session:
        yield session


def resolve_user_id(authorization: str | None) -> str | None:
    """Bearer JWT → subject, or None when the header is absent or not accepted."""
    raw = str(authorization or "").strip()
    if not raw.lower().startswith("bearer "):
        return None
    token = raw.split(" ", 1)[1].strip()
    if not token:
        return None
    try:
        payload = decode_token(token)
    except Exception:  # noqa: BLE001
        return None
    sub = str(payload.get("sub") or "").strip()
    return sub or None


def get_current_user_id(authorization: str | None = Header(default=None)) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    user_id = resolve_user_id(authorization)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def get_optional_user_id(
    authorization: str | None = Header(default=None),
) -> str | None:
    return resolve_user_id(authorization)


CurrentUserId = Depends(get_current_user_id)
OptionalUserId = Depends(get_optional_user_id)
DBSession = Depends(get_db)
