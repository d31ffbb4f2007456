from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LEADERBOARD_PRIVACY_MODES: tuple[str, ...] = ("anonymous", "username_first", "full")
LEADERBOARD_PERIODS: tuple[str, ...] = ("7d", "30d", "all")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TEED_", extra="ignore")

    public_base_url: str = "https://teed.club"
    trust_proxy_headers: bool = False
    allowed_hosts: str = "localhost,127.0.0.1,testserver"
    cors_allowed_origins: str = "http://localhost:5173,http://127.0.0.1:5173"
    log_json: bool = False

    db_url: str = "sqlite:///./artifacts/teed.db"

    auth_jwt_secret: str = "dev-secret-change-me"
    auth_jwt_issuer: str = "teed-local"
    auth_jwt_exp_minutes: int = 60 * 24 * 7

    admin_token: str | None = None

    # A bonus invite lands on every Nth successful referral.
    referral_bonus_every: int = 3
    default_invite_quota: int = 3

    # In-memory rate limit; per-process.
    rate_limit_enabled: bool = True
    rate_limit_referral_attribute_per_minute: int = 5
    rate_limit_referral_attribute_per_hour: int = 30
    rate_limit_referral_attribute_per_minute_ip: int = 60
    rate_limit_referral_attribute_per_hour_ip: int = 600

    leaderboard_enabled: bool = True
    leaderboard_cache_minutes: int = 5
    leaderboard_size: int = 10
    leaderboard_show_avatars: bool = False
    leaderboard_time_period: str = "30d"
    leaderboard_privacy_mode: str = "username_first"

    @field_validator("leaderboard_privacy_mode")
    @classmethod
    def _validate_privacy_mode(cls, v: str) -> str:
        mode = str(v or "").strip().lower()
        if mode not in LEADERBOARD_PRIVACY_MODES:
            raise ValueError(
                "TEED_LEADERBOARD_PRIVACY_MODE must be one of "
                f"{', '.join(LEADERBOARD_PRIVACY_MODES)} (got {v!r})"
            )
        return mode

    @field_validator("leaderboard_time_period")
    @classmethod
    def _validate_time_period(cls, v: str) -> str:
        period = str(v or "").strip().lower()
        if period not in LEADERBOARD_PERIODS:
            raise ValueError(
                "TEED_LEADERBOARD_TIME_PERIOD must be one of "
                f"{', '.join(LEADERBOARD_PERIODS)} (got {v!r})"
            )
        return period

    @field_validator("referral_bonus_every")
    @classmethod
    def _validate_bonus_every(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("TEED_REFERRAL_BONUS_EVERY must be >= 1")
        return int(v)
