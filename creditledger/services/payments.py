"""Payment events -> purchased credit grants, idempotent per payment."""

from typing import Any

from creditledger.core.config import Settings, get_settings
from creditledger.core.exceptions import BadRequestError
from creditledger.core.idempotency import payment_ref
from creditledger.core.logging import get_logger
from creditledger.models.enums import BucketType, TransactionType
from creditledger.services.bundles import get_bundle
from creditledger.services.credits import CreditEngine

log = get_logger(__name__)

PAYMENT_PROVIDER = "stripe"


class PaymentProcessor:
    def __init__(self, credits: CreditEngine, settings: Settings | None = None):
        self.credits = credits
        self.settings = settings or get_settings()

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Apply an already-verified provider event. Redelivery is a no-op."""
        event_type = event.get("type")
        if event_type != "checkout.session.completed":
            log.info("payment_event_ignored", event_type=event_type)
            return {"status": "ignored", "event_type": event_type}
        session = (event.get("data") or {}).get("object") or {}
        if session.get("payment_status") != "paid":
            log.info("payment_not_paid", session_id=session.get("id"))
            return {"status": "ignored", "reason": "not_paid"}
        return await self.handle_checkout_completed(session)

    async def handle_checkout_completed(self, session: dict[str, Any]) -> dict[str, Any]:
        payment_id = session.get("payment_intent") or session.get("id")
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        if not payment_id or not user_id:
            raise BadRequestError("Checkout session missing payment id or user_id", details={"session_id": session.get("id")})

        bundle_id = metadata.get("bundle_id")
        if bundle_id:
            bundle = get_bundle(bundle_id)
            base, bonus = bundle.base_credits, bundle.bonus_credits
        else:
            try:
                base, bonus = int(metadata.get("credits") or 0), 0
            except (TypeError, ValueError):
                raise BadRequestError("Invalid credits in checkout metadata", details={"credits": metadata.get("credits")})
            if base <= 0:
                raise BadRequestError("Checkout session names neither a bundle nor a credit amount")

        info = {"payment_id": payment_id, "session_id": session.get("id"), "bundle_id": bundle_id}
        base_bucket = await self.credits.grant(
            user_id,
            base,
            BucketType.PURCHASED,
            "stripe_checkout",
            expiry_days=self.settings.purchase_expiry_days,
            external_ref=payment_ref(PAYMENT_PROVIDER, payment_id, "base"),
            description=f"Purchased {base} credits" + (f" ({bundle_id} bundle)" if bundle_id else ""),
            transaction_type=TransactionType.PURCHASE,
            metadata=info,
        )
        bonus_bucket = None
        if bonus > 0:
            bonus_bucket = await self.credits.grant(
                user_id,
                bonus,
                BucketType.BONUS,
                "stripe_checkout",
                expiry_days=self.settings.purchase_bonus_expiry_days,
                external_ref=payment_ref(PAYMENT_PROVIDER, payment_id, "bonus"),
                description=f"Bundle bonus for {bundle_id}",
                transaction_type=TransactionType.BONUS,
                metadata=info,
            )
        log.info("payment_applied", user_id=user_id, payment_id=payment_id, base=base, bonus=bonus)
        return {
            "status": "applied",
            "user_id": user_id,
            "payment_id": payment_id,
            "base_bucket_id": str(base_bucket.id),
            "bonus_bucket_id": str(bonus_bucket.id) if bonus_bucket else None,
            "credits": base + bonus,
        }
