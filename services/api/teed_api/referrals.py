from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from teed_api.core.config import Settings
from teed_api.logjson import log_json
from teed_api.models import ATTRIBUTION_TYPE_SIGNUP, Profile, ReferralChain
from teed_api.referral_codes import normalize_code


AttributionErrorKind = Literal[
    "unauthenticated",
    "invalid_input",
    "already_referred",
    "invalid_code",
    "self_referral",
    "persistence_error",
    "unexpected_error",
]

ERROR_UNAUTHENTICATED: Literal["unauthenticated"] = "unauthenticated"
ERROR_INVALID_INPUT: Literal["invalid_input"] = "invalid_input"
ERROR_ALREADY_REFERRED: Literal["already_referred"] = "already_referred"
ERROR_INVALID_CODE: Literal["invalid_code"] = "invalid_code"
ERROR_SELF_REFERRAL: Literal["self_referral"] = "self_referral"
ERROR_PERSISTENCE: Literal["persistence_error"] = "persistence_error"
ERROR_UNEXPECTED: Literal["unexpected_error"] = "unexpected_error"


@dataclass(frozen=True)
class ReferrerInfo:
    id: str
    display_name: str | None
    username: str | None


@dataclass(frozen=True)
class AttributionResult:
    success: bool
    error: AttributionErrorKind | None = None
    referrer: ReferrerInfo | None = None
    bonus_granted: bool = False

    @classmethod
    def failed(cls, kind: AttributionErrorKind) -> AttributionResult:
        return cls(success=False, error=kind)


class ReferralStore:
    """
    Point lookups and single-row writes used by the attribution flow.

    Every write commits on its own; nothing here opens a transaction spanning
    more than one statement. Write failures roll the session back and re-raise.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def find_chain_for_referred(self, profile_id: str) -> ReferralChain | None:
        return self.session.scalar(
            select(ReferralChain)
            .where(ReferralChain.referred_profile_id == profile_id)
            .limit(1)
        )

    def find_profile_by_code(self, code: str) -> Profile | None:
        return self.session.scalar(
            select(Profile).where(Profile.referral_code == code).limit(1)
        )

    def insert_chain(
        self,
        *,
        referrer_profile_id: str,
        referred_profile_id: str,
        referral_code: str,
        attribution_type: str = ATTRIBUTION_TYPE_SIGNUP,
        now: datetime | None = None,
    ) -> str:
        chain_id = f"rc_{uuid4().hex}"
        self.session.add(
            ReferralChain(
                id=chain_id,
                referrer_profile_id=referrer_profile_id,
                referred_profile_id=referred_profile_id,
                referral_code=referral_code,
                attribution_type=attribution_type,
                created_at=now or datetime.now(UTC),
            )
        )
        self._commit()
        return chain_id

    def update_profile_counters(
        self,
        *,
        profile_id: str,
        observed_referrals_count: int | None,
        values: dict[str, Any],
    ) -> bool:
        """
        Conditional update: only applies while referrals_count still holds the
        value read before the write. Returns False when no row matched.
        """
        stmt = update(Profile).where(Profile.id == profile_id)
        if observed_referrals_count is None:
            stmt = stmt.where(Profile.referrals_count.is_(None))
        else:
            stmt = stmt.where(Profile.referrals_count == int(observed_referrals_count))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        try:
            res = self.session.execute(stmt)
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self._commit()
        return int(res.rowcount or 0) == 1

    def delete_chain(self, chain_id: str) -> bool:
        try:
            res = self.session.execute(
                delete(ReferralChain).where(ReferralChain.id == chain_id)
            )
        except SQLAlchemyError:
            self.session.rollback()
            raise
        self._commit()
        return int(res.rowcount or 0) == 1

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise


def attribute_referral(
    store: ReferralStore,
    *,
    referral_code: str | None,
    requesting_user_id: str | None,
    now: datetime | None = None,
    request_id: str | None = None,
) -> AttributionResult:
    """
    Link ``requesting_user_id`` to the profile owning ``referral_code``.

    Checks run in order and stop at the first failure: caller identity, code
    present, caller not already referred, code known, code not the caller's own.
    Then one chain row is inserted and the referrer's counters are updated; if
    the update does not land, the chain row is deleted again.

    Never raises: anything not mapped to a specific kind is logged and
    reported as ``unexpected_error``.
    """
    try:
        return _attribute(
            store,
            referral_code=referral_code,
            requesting_user_id=requesting_user_id,
            now=now,
            request_id=request_id,
        )
    except Exception as exc:  # noqa: BLE001
        log_json(
            "error",
            "referral_attribution_unexpected",
            request_id=request_id,
            referred_id=requesting_user_id,
            error=type(exc).__name__,
            detail=str(exc)[:400],
        )
        return AttributionResult.failed(ERROR_UNEXPECTED)


def _attribute(
    store: ReferralStore,
    *,
    referral_code: str | None,
    requesting_user_id: str | None,
    now: datetime | None,
    request_id: str | None,
) -> AttributionResult:
    settings = Settings()
    user_id = str(requesting_user_id or "").strip()
    if not user_id:
        return AttributionResult.failed(ERROR_UNAUTHENTICATED)

    code = normalize_code(referral_code)
    if not code:
        return AttributionResult.failed(ERROR_INVALID_INPUT)

    if store.find_chain_for_referred(user_id) is not None:
        return AttributionResult.failed(ERROR_ALREADY_REFERRED)

    referrer = store.find_profile_by_code(code)
    if referrer is None:
        return AttributionResult.failed(ERROR_INVALID_CODE)
    if referrer.id == user_id:
        return AttributionResult.failed(ERROR_SELF_REFERRAL)

    # Snapshot before any commit expires the ORM instance.
    info = ReferrerInfo(
        id=referrer.id,
        display_name=referrer.display_name,
        username=referrer.username,
    )
    observed_count = referrer.referrals_count
    invite_quota = (
        referrer.invite_quota
        if referrer.invite_quota is not None
        else settings.default_invite_quota
    )
    invites_used = referrer.invites_used or 0

    try:
        chain_id = store.insert_chain(
            referrer_profile_id=info.id,
            referred_profile_id=user_id,
            referral_code=code,
            now=now,
        )
    except IntegrityError as exc:
        # referred_profile_id is unique: a concurrent request may have won.
        if store.find_chain_for_referred(user_id) is not None:
            log_json(
                "warning",
                "referral_insert_conflict",
                request_id=request_id,
                referrer_id=info.id,
                referred_id=user_id,
            )
            return AttributionResult.failed(ERROR_ALREADY_REFERRED)
        log_json(
            "error",
            "referral_insert_failed",
            request_id=request_id,
            referrer_id=info.id,
            referred_id=user_id,
            error=type(exc).__name__,
        )
        return AttributionResult.failed(ERROR_PERSISTENCE)
    except SQLAlchemyError as exc:
        log_json(
            "error",
            "referral_insert_failed",
            request_id=request_id,
            referrer_id=info.id,
            referred_id=user_id,
            error=type(exc).__name__,
        )
        return AttributionResult.failed(ERROR_PERSISTENCE)

    new_count = int(observed_count or 0) + 1
    bonus_granted = new_count % settings.referral_bonus_every == 0
    values: dict[str, Any] = {
        "referrals_count": new_count,
        "invites_used": min(invites_used + 1, invite_quota),
    }
    if bonus_granted:
        values["invite_quota"] = invite_quota + 1

    update_error: str | None = None
    try:
        applied = store.update_profile_counters(
            profile_id=info.id,
            observed_referrals_count=observed_count,
            values=values,
        )
        if not applied:
            update_error = "stale_referrals_count"
    except SQLAlchemyError as exc:
        update_error = type(exc).__name__

    if update_error is not None:
        log_json(
            "error",
            "referral_profile_update_failed",
            request_id=request_id,
            referrer_id=info.id,
            referred_id=user_id,
            chain_id=chain_id,
            error=update_error,
        )
        _compensate_chain_insert(store, chain_id=chain_id, request_id=request_id)
        return AttributionResult.failed(ERROR_PERSISTENCE)

    log_json(
        "info",
        "referral_attributed",
        request_id=request_id,
        referrer_id=info.id,
        referred_id=user_id,
        chain_id=chain_id,
        referrals_count=new_count,
        bonus_granted=bonus_granted,
    )
    return AttributionResult(success=True, referrer=info, bonus_granted=bonus_granted)


def _compensate_chain_insert(
    store: ReferralStore, *, chain_id: str, request_id: str | None
) -> None:
    # Best-effort, single attempt. A failure here leaves an orphaned chain row
    # that operators reconcile from the log.
    try:
        deleted = store.delete_chain(chain_id)
    except SQLAlchemyError as exc:
        log_json(
            "error",
            "referral_compensation_failed",
            request_id=request_id,
            chain_id=chain_id,
            error=type(exc).__name__,
        )
        return
    if not deleted:
        log_json(
            "error",
            "referral_compensation_failed",
            request_id=request_id,
            chain_id=chain_id,
            error="chain_row_missing",
        )
        return
    log_json(
        "warning",
        "referral_compensated",
        request_id=request_id,
        chain_id=chain_id,
    )
