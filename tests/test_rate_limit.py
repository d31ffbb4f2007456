from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import HTTPException

from teed_api.rate_limit import check_rate_limit, check_referral_attribute_rate_limit


class _DummyClient:
    host = "203.0.113.10"


class _DummyRequest:
    client = _DummyClient()


def test_referral_rate_limit_enforces_ip_scope_across_users(monkeypatch) -> None:
    monkeypatch.setenv("TEED_RATE_LIMIT_REFERRAL_ATTRIBUTE_PER_MINUTE_IP", "1")
    now = datetime(2026, 9, 1, tzinfo=UTC)

    check_referral_attribute_rate_limit(
        user_id="user_a",
        request=_DummyRequest(),  # type: ignore[arg-type]
        now=now,
    )

    try:
        check_referral_attribute_rate_limit(
            user_id="user_b",
            request=_DummyRequest(),  # type: ignore[arg-type]
            now=now,
        )
    except HTTPException as exc:
        assert exc.status_code == 429
        assert isinstance(exc.detail, dict)
        assert exc.detail.get("retry_after_sec")
        assert exc.detail.get("scope") == "ip"
        assert (exc.headers or {}).get("Retry-After")
    else:
        raise AssertionError("expected ip-based rate limit to trigger")


def test_rate_limit_window_resets_next_minute() -> None:
    now = datetime(2026, 9, 1, 12, 0, 5, tzinfo=UTC)
    kwargs = dict(subject="user_window", action="test_window", per_minute=1, per_hour=0)

    check_rate_limit(now=now, **kwargs)
    try:
        check_rate_limit(now=now + timedelta(seconds=10), **kwargs)
    except HTTPException as exc:
        assert exc.detail["retry_after_sec"] == 45
    else:
        raise AssertionError("expected minute limit to trigger")

    check_rate_limit(now=now + timedelta(minutes=1), **kwargs)


def test_rate_limit_disabled(monkeypatch) -> None:
    monkeypatch.setenv("TEED_RATE_LIMIT_ENABLED", "false")
    now = datetime(2026, 9, 1, tzinfo=UTC)
    for _ in range(5):
        check_rate_limit(
            subject="user_off", action="test_off", per_minute=1, per_hour=1, now=now
        )
