"""Credit engine: grants and their idempotency."""

from datetime import datetime, timedelta

import pytest

from creditledger.core.exceptions import InvalidAmountError, StorageUnavailableError
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.enums import BucketType, TransactionType
from creditledger.services.credits import infer_transaction_type


async def test_grant_creates_bucket_and_mirroring_transaction(ledger):
    bucket = await ledger.credits.grant("u1", 2500, BucketType.BONUS, "promo")
    txns = await CreditTransaction.find(CreditTransaction.user_id == "u1").to_list()
    assert len(txns) == 1
    assert txns[0].amount == 2500
    assert txns[0].type == TransactionType.BONUS
    assert txns[0].related_bucket_ids == [str(bucket.id)]
    assert await ledger.get_user_total_credits("u1") == 2500


async def test_grant_with_same_external_ref_is_a_no_op(ledger):
    first = await ledger.credits.grant("u1", 1000, BucketType.PURCHASED, "stripe_checkout", external_ref="stripe:pi_9:base")
    again = await ledger.credits.grant("u1", 1000, BucketType.PURCHASED, "stripe_checkout", external_ref="stripe:pi_9:base")
    assert again.id == first.id
    assert await CreditBucket.find(CreditBucket.user_id == "u1").count() == 1
    assert await CreditTransaction.find(CreditTransaction.user_id == "u1").count() == 1
    assert await ledger.get_user_total_credits("u1") == 1000


async def test_grants_without_ref_are_independent(ledger):
    await ledger.credits.grant("u1", 10, BucketType.BONUS, "promo")
    await ledger.credits.grant("u1", 10, BucketType.BONUS, "promo")
    assert await ledger.get_user_total_credits("u1") == 20


async def test_expiry_days_sets_expires_at(ledger):
    now = datetime(2026, 1, 10, 12, 0)
    bucket = await ledger.credits.grant("u1", 100, BucketType.REFERRAL, "referral_bonus", expiry_days=90, now=now)
    assert bucket.expires_at == now + timedelta(days=90)
    forever = await ledger.credits.grant("u1", 100, BucketType.PURCHASED, "purchase")
    assert forever.expires_at is None


@pytest.mark.parametrize("amount", [0, -1, 2.5])
async def test_grant_rejects_invalid_amount(ledger, amount):
    with pytest.raises(InvalidAmountError):
        await ledger.credits.grant("u1", amount, BucketType.BONUS, "promo")
    assert await CreditBucket.find(CreditBucket.user_id == "u1").count() == 0


async def test_grant_is_removed_when_transaction_cannot_be_written(ledger, monkeypatch):
    async def broken_append(**kwargs):
        raise StorageUnavailableError()

    monkeypatch.setattr(ledger.credits.transactions, "append", broken_append)
    with pytest.raises(StorageUnavailableError):
        await ledger.credits.grant("u1", 100, BucketType.BONUS, "promo", external_ref="promo-1")
    assert await CreditBucket.find(CreditBucket.user_id == "u1").count() == 0


async def test_add_credits_defaults_to_purchase(ledger):
    bucket = await ledger.add_credits("u1", 500, external_ref="manual-1")
    assert bucket.type == BucketType.PURCHASED
    txn = await CreditTransaction.find_one(CreditTransaction.user_id == "u1")
    assert txn.type == TransactionType.PURCHASE


def test_infer_transaction_type():
    assert infer_transaction_type(BucketType.BONUS, "automation_bonus") == TransactionType.AUTOMATION_BONUS
    assert infer_transaction_type(BucketType.REFERRAL, "anything") == TransactionType.REFERRAL_BONUS
    assert infer_transaction_type(BucketType.PURCHASED, "stripe_checkout") == TransactionType.PURCHASE
    assert infer_transaction_type(BucketType.BONUS, "promo") == TransactionType.BONUS
