from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Any

from fastapi import HTTPException, Request

from teed_api.core.config import Settings


@dataclass
class _Window:
    minute_start: int
    minute_count: int
    hour_start: int
    hour_count: int


_LOCK = Lock()
_STATE: dict[tuple[str, str], _Window] = {}


def client_ip_hash(request: Request | None) -> str | None:
    if request is None:
        return None
    ip = str(getattr(getattr(request, "client", None), "host", None) or "").strip()
    if not ip:
        return None
    secret = Settings().auth_jwt_secret
    return hashlib.sha256(f"{ip}|{secret}".encode("utf-8")).hexdigest()


def reset_rate_limits() -> None:
    with _LOCK:
        _STATE.clear()


def _epoch_seconds(now: datetime) -> int:
    if getattr(now, "tzinfo", None) is None:
        now = now.replace(tzinfo=UTC)
    return int(now.timestamp())


def _consume(
    *, key: tuple[str, str], per_minute: int, per_hour: int, now_s: int
) -> int | None:
    """Count one hit for ``key``; return retry-after seconds when over budget."""
    minute_bucket = now_s // 60
    hour_bucket = now_s // 3600
    with _LOCK:
        w = _STATE.get(key)
        if w is None:
            w = _Window(
                minute_start=minute_bucket,
                minute_count=0,
                hour_start=hour_bucket,
                hour_count=0,
            )
            _STATE[key] = w
        if w.minute_start != minute_bucket:
            w.minute_start = minute_bucket
            w.minute_count = 0
        if w.hour_start != hour_bucket:
            w.hour_start = hour_bucket
            w.hour_count = 0

        if per_minute > 0 and w.minute_count >= per_minute:
            return max(1, 60 - (now_s % 60))
        if per_hour > 0 and w.hour_count >= per_hour:
            return max(1, 3600 - (now_s % 3600))

        w.minute_count += 1
        w.hour_count += 1
        return None


def check_rate_limit(
    *,
    subject: str,
    action: str,
    per_minute: int,
    per_hour: int,
    now: datetime | None = None,
    extra_detail: dict[str, Any] | None = None,
) -> None:
    if not Settings().rate_limit_enabled:
        return
    if per_minute <= 0 and per_hour <= 0:
        return

    now_s = _epoch_seconds(now or datetime.now(UTC))
    retry_after = _consume(
        key=(str(subject or "anon"), str(action)),
        per_minute=int(per_minute),
        per_hour=int(per_hour),
        now_s=now_s,
    )
    if retry_after is None:
        return
    raise HTTPException(
        status_code=429,
        detail={
            "error": "rate_limited",
            "action": action,
            "retry_after_sec": retry_after,
            **(extra_detail or {}),
        },
        headers={"Retry-After": str(int(retry_after))},
    )


def check_referral_attribute_rate_limit(
    *,
    user_id: str,
    request: Request | None,
    now: datetime | None = None,
) -> None:
    settings = Settings()
    action = "referral_attribute"
    check_rate_limit(
        subject=user_id,
        action=action,
        per_minute=settings.rate_limit_referral_attribute_per_minute,
        per_hour=settings.rate_limit_referral_attribute_per_hour,
        now=now,
        extra_detail={"scope": "user"},
    )

    ip_hash = client_ip_hash(request)
    if not ip_hash:
        return
    check_rate_limit(
        subject=f"ip:{ip_hash[:48]}",
        action=action,
        per_minute=settings.rate_limit_referral_attribute_per_minute_ip,
        per_hour=settings.rate_limit_referral_attribute_per_hour_ip,
        now=now,
        extra_detail={"scope": "ip"},
    )
