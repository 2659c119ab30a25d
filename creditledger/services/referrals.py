"""Referral program: signup linking, qualification and once-only bonuses."""

import secrets
from datetime import datetime
from typing import Any

from beanie.operators import Set
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from pymongo.errors import DuplicateKeyError

from creditledger.core.config import Settings, get_settings
from creditledger.core.exceptions import AppError, BadRequestError, LedgerValidationError
from creditledger.core.idempotency import referral_ref, welcome_ref
from creditledger.core.logging import get_logger
from creditledger.db.errors import storage_guard
from creditledger.models.enums import BucketType, ReferralStatus, TransactionType
from creditledger.models.referral import Referral
from creditledger.models.system_config import SystemConfig
from creditledger.models.user import User
from creditledger.services.credits import CreditEngine
from creditledger.services.transactions import TransactionLog

log = get_logger(__name__)

REFERRAL_CONFIG_KEY = "referralProgram"


class ReferralConfig(BaseModel):
    """Stored camelCase under the `referralProgram` config record."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    inviter_bonus: int = Field(ge=0)
    invitee_bonus: int = Field(ge=0)
    min_spend_requirement: int = Field(ge=0)
    welcome_bonus: int = Field(default=0, ge=0)
    inviter_expiry_days: int = Field(default=180, gt=0)
    invitee_expiry_days: int = Field(default=90, gt=0)

    @classmethod
    def defaults(cls, settings: Settings) -> "ReferralConfig":
        return cls(
            inviter_bonus=settings.referral_inviter_bonus,
            invitee_bonus=settings.referral_invitee_bonus,
            min_spend_requirement=settings.referral_min_spend,
            welcome_bonus=settings.referral_welcome_bonus,
            inviter_expiry_days=settings.referral_inviter_expiry_days,
            invitee_expiry_days=settings.referral_invitee_expiry_days,
        )


def _generate_code() -> str:
    return secrets.token_urlsafe(6).upper().replace("-", "").replace("_", "")[:10]


class ReferralProcessor:
    def __init__(self, credits: CreditEngine, transactions: TransactionLog, settings: Settings | None = None):
        self.credits = credits
        self.transactions = transactions
        self.settings = settings or get_settings()

    async def get_referral_config(self) -> ReferralConfig:
        defaults = ReferralConfig.defaults(self.settings)
        with storage_guard("get_referral_config"):
            record = await SystemConfig.find_one(SystemConfig.key == REFERRAL_CONFIG_KEY)
        if record is None or not record.value:
            return defaults
        try:
            return ReferralConfig.model_validate({**defaults.model_dump(by_alias=True), **record.value})
        except ValidationError as e:
            log.error("referral_config_invalid", errors=e.errors(include_url=False))
            return defaults

    async def update_referral_config(self, changes: dict[str, Any]) -> ReferralConfig:
        current = await self.get_referral_config()
        changes = {to_camel(k) if k in ReferralConfig.model_fields else k: v for k, v in changes.items()}
        try:
            updated = ReferralConfig.model_validate({**current.model_dump(by_alias=True), **changes})
        except ValidationError as e:
            raise LedgerValidationError(
                "Invalid referral configuration", details={"errors": e.errors(include_url=False)}
            )
        value = updated.model_dump(by_alias=True)
        now = datetime.utcnow()
        with storage_guard("update_referral_config"):
            record = await SystemConfig.find_one(SystemConfig.key == REFERRAL_CONFIG_KEY)
            if record is None:
                await SystemConfig(key=REFERRAL_CONFIG_KEY, value=value, updated_at=now).insert()
            else:
                record.value = value
                record.updated_at = now
                await record.save()
        log.info("referral_config_updated", **updated.model_dump())
        return updated

    async def ensure_user(self, user_id: str, email: str = "", name: str = "") -> User:
        """Return the ledger-side user record, creating it with a fresh referral code."""
        with storage_guard("get_user"):
            user = await User.find_one(User.user_id == user_id)
        if user:
            return user
        for _ in range(10):
            code = _generate_code()
            with storage_guard("get_user"):
                if await User.find_one(User.referral_code == code):
                    continue
            user = User(user_id=user_id, email=email, name=name, referral_code=code)
            try:
                with storage_guard("create_user"):
                    await user.insert()
            except DuplicateKeyError:
                # concurrent signup for the same user, or a code collision
                with storage_guard("get_user"):
                    existing = await User.find_one(User.user_id == user_id)
                if existing:
                    return existing
                continue
            return user
        raise BadRequestError("Could not generate unique referral code")

    async def process_new_user_signup(
        self,
        user_id: str,
        referral_code: str | None = None,
        email: str = "",
        name: str = "",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Link a new user to their inviter. Unknown and self codes are ignored; links never change."""
        now = now or datetime.utcnow()
        config = await self.get_referral_config()
        user = await self.ensure_user(user_id, email, name)
        result: dict[str, Any] = {
            "user_id": user_id,
            "referral_code": user.referral_code,
            "referrer_id": user.referred_by,
            "linked": False,
            "credits_awarded": 0,
        }

        if config.welcome_bonus > 0:
            bucket = await self.credits.grant(
                user_id,
                config.welcome_bonus,
                BucketType.REFERRAL,
                "welcome_bonus",
                expiry_days=config.invitee_expiry_days,
                external_ref=welcome_ref(user_id),
                description="Welcome bonus",
                now=now,
            )
            result["credits_awarded"] = bucket.amount

        code = (referral_code or "").strip().upper()
        if user.referred_by:
            result["status"] = "already_referred"
            return result
        if not code:
            result["status"] = "no_code"
            return result
        with storage_guard("find_referrer"):
            referrer = await User.find_one(User.referral_code == code)
        if referrer is None:
            result["status"] = "invalid_code"
            return result
        if referrer.user_id == user_id:
            result["status"] = "self_referral"
            return result

        try:
            with storage_guard("create_referral"):
                await Referral(referrer_id=referrer.user_id, referred_id=user_id, created_at=now).insert()
        except DuplicateKeyError:
            result["status"] = "already_referred"
            return result
        user.referred_by = referrer.user_id
        user.updated_at = now
        with storage_guard("link_referral"):
            await user.save()
        log.info("referral_linked", referrer_id=referrer.user_id, referred_id=user_id)
        result.update(referrer_id=referrer.user_id, linked=True, status="linked")
        return result

    async def process_qualifying_referrals(self, now: datetime | None = None) -> int:
        """Reward every pending referral whose invitee has spent enough. Safe to re-run."""
        now = now or datetime.utcnow()
        config = await self.get_referral_config()
        with storage_guard("pending_referrals"):
            pending = await Referral.find(Referral.status == ReferralStatus.PENDING.value).sort(
                +Referral.created_at
            ).to_list()

        processed = 0
        for referral in pending:
            try:
                if await self._complete_if_qualified(referral, config, now):
                    processed += 1
            except AppError as e:
                # retried on the next run; grants are keyed so nothing doubles
                log.error("referral_processing_failed", referral_id=str(referral.id), error=e.message)
        log.info("referrals_processed", pending=len(pending), completed=processed)
        return processed

    async def _complete_if_qualified(self, referral: Referral, config: ReferralConfig, now: datetime) -> bool:
        spent = await self.transactions.total_debited(referral.referred_id)
        if spent < config.min_spend_requirement:
            return False

        rid = str(referral.id)
        if config.inviter_bonus > 0:
            await self.credits.grant(
                referral.referrer_id,
                config.inviter_bonus,
                BucketType.REFERRAL,
                "referral_bonus",
                expiry_days=config.inviter_expiry_days,
                external_ref=referral_ref(rid, "inviter"),
                description="Referral bonus for inviting a friend",
                metadata={"referral_id": rid, "referred_id": referral.referred_id},
                now=now,
            )
        if config.invitee_bonus > 0:
            await self.credits.grant(
                referral.referred_id,
                config.invitee_bonus,
                BucketType.REFERRAL,
                "referral_bonus",
                expiry_days=config.invitee_expiry_days,
                external_ref=referral_ref(rid, "invitee"),
                description="Referral bonus for joining through an invite",
                metadata={"referral_id": rid, "referrer_id": referral.referrer_id},
                now=now,
            )

        with storage_guard("complete_referral"):
            result = await Referral.find_one(
                Referral.id == referral.id,
                Referral.status == ReferralStatus.PENDING.value,
            ).update(
                Set(
                    {
                        Referral.status: ReferralStatus.COMPLETE.value,
                        Referral.credits_awarded: config.inviter_bonus,
                        Referral.completed_at: now,
                    }
                )
            )
        if result.modified_count != 1:
            return False
        log.info(
            "referral_completed",
            referral_id=rid,
            referrer_id=referral.referrer_id,
            referred_id=referral.referred_id,
            spent=spent,
        )
        return True

    async def referral_stats(self, user_id: str) -> dict[str, Any]:
        with storage_guard("referral_stats"):
            user = await User.find_one(User.user_id == user_id)
            referred_count = await Referral.find(Referral.referrer_id == user_id).count()
            completed_count = await Referral.find(
                Referral.referrer_id == user_id,
                Referral.status == ReferralStatus.COMPLETE.value,
            ).count()
        total = await self.transactions.sum_of_type(user_id, TransactionType.REFERRAL_BONUS)
        return {
            "user_id": user_id,
            "referral_code": user.referral_code if user else None,
            "referred_count": referred_count,
            "completed_count": completed_count,
            "pending_count": referred_count - completed_count,
            "total_referral_credits": total,
        }
