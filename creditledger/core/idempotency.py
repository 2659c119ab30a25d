"""External reference (idempotency key) conventions for ledger grants.

Every grant is stored with a `grant_key` that is unique across the bucket
collection. Callers that can be retried (payment webhooks, scheduled bonus
jobs, referral rewards) derive the key from the external event so that a
second delivery collides with the first; one-off grants get a random key.
"""

import uuid
from datetime import datetime


def grant_key(user_id: str, external_ref: str | None) -> str:
    if external_ref:
        return f"{user_id}:{external_ref}"
    return f"{user_id}:oneoff:{uuid.uuid4().hex}"


def payment_ref(provider: str, payment_id: str, part: str) -> str:
    return f"{provider}:{payment_id}:{part}"


def referral_ref(referral_id: str, role: str) -> str:
    return f"referral:{referral_id}:{role}"


def welcome_ref(user_id: str) -> str:
    return f"welcome_bonus:{user_id}"


def period_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


def automation_bonus_ref(user_id: str, now: datetime) -> str:
    return f"automation_bonus_{user_id}_{period_key(now)}"


def creator_payout_ref(transaction_id: str) -> str:
    return f"creator_payout:{transaction_id}"


def legacy_migration_ref(user_id: str) -> str:
    return f"legacy_migration:{user_id}"
