from __future__ import annotations

from sqlalchemy.exc import OperationalError


def _seed(make_profile, unique_code, **kwargs) -> tuple[str, str]:
    from teed_api.db import SessionLocal

    code = unique_code()
    with SessionLocal() as session:
        pid = make_profile(session, referral_code=code, **kwargs)
    return pid, code


def _new_user(make_profile) -> str:
    from teed_api.db import SessionLocal

    with SessionLocal() as session:
        return make_profile(session)


def test_attribute_success_payload(
    api_client, make_profile, unique_code, auth_headers
) -> None:
    from teed_api.db import SessionLocal
    from teed_api.models import Profile

    referrer, code = _seed(
        make_profile, unique_code, display_name="Max Fairway", referrals_count=2
    )
    caller = _new_user(make_profile)

    resp = api_client.post(
        "/api/referral/attribute",
        json={"referral_code": f" {code.lower()} "},
        headers=auth_headers(caller),
    )

    assert resp.status_code == 200
    assert resp.headers.get("X-Request-Id")
    j = resp.json()
    assert j["success"] is True
    assert j["referrer"] == {"id": referrer, "display_name": "Max Fairway", "username": None}
    assert j["message"] == "You were referred by Max Fairway!"
    assert j["bonus_granted"] is True

    with SessionLocal() as session:
        p = session.get(Profile, referrer)
        assert p.referrals_count == 3
        assert p.invite_quota == 4


def test_attribute_message_falls_back_to_username(
    api_client, make_profile, unique_code, auth_headers
) -> None:
    from uuid import uuid4

    username = f"tee_{uuid4().hex[:8]}"
    _, code = _seed(make_profile, unique_code, username=username)
    caller = _new_user(make_profile)

    resp = api_client.post(
        "/api/referral/attribute", json={"referral_code": code}, headers=auth_headers(caller)
    )

    assert resp.status_code == 200
    assert resp.json()["message"] == f"You were referred by {username}!"
    assert resp.json()["bonus_granted"] is False


def test_attribute_wrong_method(api_client) -> None:
    for method in ("GET", "PUT", "PATCH", "DELETE", "OPTIONS"):
        resp = api_client.request(method, "/api/referral/attribute")
        assert resp.status_code == 405, method
        assert resp.json() == {"error": "Method not allowed"}, method
        assert resp.headers.get("Allow") == "POST", method

    head = api_client.head("/api/referral/attribute")
    assert head.status_code == 405
    assert head.headers.get("Allow") == "POST"


def test_attribute_non_string_code_is_400(api_client, make_profile, auth_headers) -> None:
    caller = _new_user(make_profile)
    expected = {"success": False, "message": "Missing referral code"}

    bodies = (
        {"referral_code": 123},
        {"referral_code": None},
        {"referral_code": ["A"]},
        ["A"],
        "ABC",
    )
    for body in bodies:
        resp = api_client.post(
            "/api/referral/attribute", json=body, headers=auth_headers(caller)
        )
        assert resp.status_code == 400, body
        assert resp.json() == expected, body


def test_attribute_missing_code_is_400_regardless_of_auth(
    api_client, make_profile, auth_headers
) -> None:
    caller = _new_user(make_profile)
    expected = {"success": False, "message": "Missing referral code"}

    for headers in ({}, auth_headers(caller), {"Authorization": "Bearer not-a-jwt"}):
        for body in ({"referral_code": ""}, {"referral_code": "   "}, {}):
            resp = api_client.post("/api/referral/attribute", json=body, headers=headers)
            assert resp.status_code == 400
            assert resp.json() == expected

    resp = api_client.post("/api/referral/attribute")
    assert resp.status_code == 400
    assert resp.json() == expected


def test_attribute_requires_auth(api_client, make_profile, unique_code) -> None:
    _, code = _seed(make_profile, unique_code)
    expected = {"success": False, "message": "Authentication required"}

    for headers in (
        {},
        {"Authorization": "Bearer not-a-jwt"},
        {"Authorization": "Basic dXNlcjpwYXNz"},
    ):
        resp = api_client.post(
            "/api/referral/attribute", json={"referral_code": code}, headers=headers
        )
        assert resp.status_code == 401
        assert resp.json() == expected


def test_attribute_rejections(
    api_client, make_profile, unique_code, auth_headers
) -> None:
    referrer, code = _seed(make_profile, unique_code)
    caller = _new_user(make_profile)

    bad = api_client.post(
        "/api/referral/attribute",
        json={"referral_code": "NOTACODE"},
        headers=auth_headers(caller),
    )
    assert bad.status_code == 400
    assert bad.json() == {"success": False, "message": "Invalid referral code"}

    own = api_client.post(
        "/api/referral/attribute",
        json={"referral_code": code},
        headers=auth_headers(referrer),
    )
    assert own.status_code == 400
    assert own.json() == {"success": False, "message": "You cannot refer yourself"}

    ok = api_client.post(
        "/api/referral/attribute", json={"referral_code": code}, headers=auth_headers(caller)
    )
    assert ok.status_code == 200

    again = api_client.post(
        "/api/referral/attribute", json={"referral_code": code}, headers=auth_headers(caller)
    )
    assert again.status_code == 400
    assert again.json() == {
        "success": False,
        "message": "You have already been referred by someone",
    }


def test_attribute_persistence_failure_is_500_and_compensated(
    api_client, make_profile, unique_code, auth_headers, monkeypatch
) -> None:
    from teed_api.db import SessionLocal
    from teed_api.models import ReferralChain
    from teed_api.referrals import ReferralStore

    _, code = _seed(make_profile, unique_code)
    caller = _new_user(make_profile)

    def _boom(self, **_kwargs):
        raise OperationalError("UPDATE profiles", {}, Exception("db went away"))

    monkeypatch.setattr(ReferralStore, "update_profile_counters", _boom)

    resp = api_client.post(
        "/api/referral/attribute", json={"referral_code": code}, headers=auth_headers(caller)
    )

    assert resp.status_code == 500
    assert resp.json() == {
        "success": False,
        "message": "Failed to complete referral attribution",
    }
    assert "db went away" not in resp.text
    with SessionLocal() as session:
        assert (
            session.query(ReferralChain)
            .filter(ReferralChain.referred_profile_id == caller)
            .first()
            is None
        )


def test_attribute_unexpected_error_is_500(
    api_client, make_profile, unique_code, auth_headers, monkeypatch
) -> None:
    import teed_api.routers.referrals as referrals_router

    _, code = _seed(make_profile, unique_code)
    caller = _new_user(make_profile)

    def _explode(*_args, **_kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(referrals_router, "attribute_referral", _explode)

    resp = api_client.post(
        "/api/referral/attribute", json={"referral_code": code}, headers=auth_headers(caller)
    )

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "message": "An unexpected error occurred"}
    assert "secret internals" not in resp.text


def test_attribute_rate_limited_per_user(
    api_client, make_profile, auth_headers, monkeypatch
) -> None:
    monkeypatch.setenv("TEED_RATE_LIMIT_REFERRAL_ATTRIBUTE_PER_MINUTE", "2")
    caller = _new_user(make_profile)
    headers = auth_headers(caller)

    for _ in range(2):
        resp = api_client.post(
            "/api/referral/attribute", json={"referral_code": "NOTACODE"}, headers=headers
        )
        assert resp.status_code == 400

    limited = api_client.post(
        "/api/referral/attribute", json={"referral_code": "NOTACODE"}, headers=headers
    )
    assert limited.status_code == 429
    assert limited.headers.get("Retry-After")
    detail = limited.json()["detail"]
    assert detail["error"] == "rate_limited"
    assert detail["scope"] == "user"
