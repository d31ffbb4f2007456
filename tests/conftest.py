from __future__ import annotations

import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

import pytest


_TEST_ROOT = Path(tempfile.mkdtemp(prefix="teed_test_"))
_DB_PATH = _TEST_ROOT / "teed_test.db"

os.environ["TEED_DB_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["TEED_AUTH_JWT_SECRET"] = "test-secret"
os.environ["TEED_LOG_JSON"] = "false"


@pytest.fixture(scope="session")
def db_schema() -> None:
    from teed_api.db import Base, engine
    import teed_api.models  # noqa: F401

    Base.metadata.create_all(engine)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    from teed_api.rate_limit import reset_rate_limits

    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture()
def fresh_session():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from teed_api.db import Base
    import teed_api.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    with factory() as session:
        yield session
    engine.dispose()


@pytest.fixture()
def make_profile():
    from teed_api.models import Profile

    def _make(
        session,
        *,
        referral_code: str | None = None,
        referrals_count: int = 0,
        invite_quota: int = 3,
        invites_used: int = 0,
        display_name: str | None = None,
        username: str | None = None,
        show_referrer: bool = True,
        profile_id: str | None = None,
    ) -> str:
        pid = profile_id or f"p_{uuid4().hex[:12]}"
        session.add(
            Profile(
                id=pid,
                username=username,
                display_name=display_name,
                referral_code=referral_code,
                referrals_count=referrals_count,
                invite_quota=invite_quota,
                invites_used=invites_used,
                show_referrer=show_referrer,
                created_at=datetime.now(UTC),
            )
        )
        session.commit()
        return pid

    return _make


@pytest.fixture()
def unique_code():
    def _code() -> str:
        return uuid4().hex[:8].upper()

    return _code


@pytest.fixture()
def auth_headers():
    from teed_api.core.security import create_access_token

    def _headers(user_id: str) -> dict[str, str]:
        token = create_access_token(subject=user_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def api_client(db_schema):
    from fastapi.testclient import TestClient

    from teed_api.main import app

    return TestClient(app)
