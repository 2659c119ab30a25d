"""Debit engine: drain order, all-or-nothing, serialization."""

import asyncio
from datetime import datetime, timedelta

import pytest

from creditledger.core.exceptions import InvalidAmountError
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.enums import BucketType, ItemType, TransactionType
from creditledger.services.debit import ChargeMetadata, plan_drain


async def _balance(ledger, user_id):
    return await ledger.get_user_total_credits(user_id)


async def test_drains_soonest_expiring_then_bonus_before_purchased(ledger):
    now = datetime.utcnow()
    referral = await ledger.store.create_bucket(
        "u1", BucketType.REFERRAL, 5000, "referral_bonus", expires_at=now + timedelta(days=1)
    )
    bonus = await ledger.store.create_bucket("u1", BucketType.BONUS, 10000, "bonus")
    purchased = await ledger.store.create_bucket("u1", BucketType.PURCHASED, 50000, "purchase")

    result = await ledger.debits.charge("u1", 6000)

    assert result.success
    assert (await ledger.store.get(referral.id)).remaining == 0
    assert (await ledger.store.get(bonus.id)).remaining == 9000
    assert (await ledger.store.get(purchased.id)).remaining == 50000
    assert [(d.bucket_id, d.amount_taken) for d in result.drained] == [(str(referral.id), 5000), (str(bonus.id), 1000)]
    assert result.balance_after == 59000
    assert await _balance(ledger, "u1") == 59000


async def test_single_transaction_per_charge(ledger):
    await ledger.store.create_bucket("u1", BucketType.BONUS, 300, "bonus")
    await ledger.store.create_bucket("u1", BucketType.PURCHASED, 300, "purchase")
    result = await ledger.debits.charge(
        "u1",
        500,
        ChargeMetadata(type=TransactionType.PROMPT_RUN, item_id="p1", item_type=ItemType.PROMPT, model_id="gpt-4o"),
    )
    txns = await CreditTransaction.find(CreditTransaction.user_id == "u1").to_list()
    assert len(txns) == 1
    txn = txns[0]
    assert txn.id == result.transaction.id
    assert txn.amount == -500
    assert txn.type == TransactionType.PROMPT_RUN
    assert txn.item_id == "p1"
    assert len(txn.related_bucket_ids) == 2


async def test_insufficient_credits_changes_nothing(ledger):
    bucket = await ledger.store.create_bucket("u1", BucketType.PURCHASED, 1000, "purchase")
    result = await ledger.debits.charge("u1", 1001)
    assert not result.success
    assert result.reason == "insufficient_credits"
    assert result.transaction is None
    assert result.balance_after == 1000
    assert (await ledger.store.get(bucket.id)).remaining == 1000
    assert await CreditTransaction.find(CreditTransaction.user_id == "u1").count() == 0


async def test_no_buckets_charge_one(ledger):
    result = await ledger.debits.charge("nobody", 1)
    assert not result.success
    assert await _balance(ledger, "nobody") == 0
    assert await CreditTransaction.find(CreditTransaction.user_id == "nobody").count() == 0


async def test_expired_bucket_is_not_spent(ledger):
    now = datetime.utcnow()
    await ledger.store.create_bucket("u1", BucketType.BONUS, 5000, "bonus", expires_at=now - timedelta(minutes=1))
    await ledger.store.create_bucket("u1", BucketType.PURCHASED, 100, "purchase")
    result = await ledger.debits.charge("u1", 200)
    assert not result.success


async def test_exact_balance_can_be_spent(ledger):
    await ledger.store.create_bucket("u1", BucketType.PURCHASED, 700, "purchase")
    result = await ledger.debits.charge("u1", 700)
    assert result.success
    assert await _balance(ledger, "u1") == 0


@pytest.mark.parametrize("amount", [0, -10, 1.5, True])
async def test_invalid_amount(ledger, amount):
    with pytest.raises(InvalidAmountError):
        await ledger.debits.charge("u1", amount)


async def test_concurrent_charges_never_overdraw(ledger):
    await ledger.store.create_bucket("u1", BucketType.PURCHASED, 10000, "purchase")
    results = await asyncio.gather(*[ledger.debits.charge("u1", 3000) for _ in range(5)])
    assert sum(1 for r in results if r.success) == 3
    assert await _balance(ledger, "u1") == 1000
    assert await CreditTransaction.find(CreditTransaction.user_id == "u1").count() == 3


async def test_replans_when_bucket_drained_underneath(ledger, monkeypatch):
    """A decrement that loses a race rolls back and re-plans from fresh reads."""
    first = await ledger.store.create_bucket("u1", BucketType.BONUS, 500, "bonus")
    await ledger.store.create_bucket("u1", BucketType.PURCHASED, 1000, "purchase")

    original = ledger.store.spendable_buckets
    calls = {"n": 0}

    async def stale_then_fresh(user_id, now):
        buckets = await original(user_id, now)
        calls["n"] += 1
        if calls["n"] == 1:
            # someone else spends the bonus bucket after our read
            await ledger.store.decrement_bucket(first.id, 500)
        return buckets

    monkeypatch.setattr(ledger.store, "spendable_buckets", stale_then_fresh)
    result = await ledger.debits.charge("u1", 800)

    assert result.success
    assert calls["n"] == 2
    assert [d.amount_taken for d in result.drained] == [800]
    assert await _balance(ledger, "u1") == 200


async def test_failed_transaction_write_restores_buckets(ledger, monkeypatch):
    from creditledger.core.exceptions import StorageUnavailableError

    bucket = await ledger.store.create_bucket("u1", BucketType.PURCHASED, 1000, "purchase")

    async def broken_append(**kwargs):
        raise StorageUnavailableError()

    monkeypatch.setattr(ledger.transactions, "append", broken_append)
    with pytest.raises(StorageUnavailableError):
        await ledger.debits.charge("u1", 400)
    assert (await ledger.store.get(bucket.id)).remaining == 1000


def test_plan_drain_is_pure():
    class B:
        def __init__(self, remaining):
            self.remaining = remaining

    buckets = [B(5), B(0), B(10)]
    plan = plan_drain(buckets, 8)
    assert [(b.remaining, take) for b, take in plan] == [(5, 5), (10, 3)]
    assert [b.remaining for b in buckets] == [5, 0, 10]
    assert plan_drain(buckets, 16) is None


async def test_rollback_does_not_revive_bucket_that_expired_mid_charge(ledger, monkeypatch):
    from beanie.operators import Set

    from creditledger.core.exceptions import StorageUnavailableError
    from creditledger.models.credit_bucket import CreditBucket

    now = datetime.utcnow()
    soon = await ledger.store.create_bucket(
        "u1", BucketType.REFERRAL, 100, "referral_bonus", expires_at=now + timedelta(hours=1)
    )
    purchased = await ledger.store.create_bucket("u1", BucketType.PURCHASED, 100, "purchase")

    original = ledger.store.decrement_bucket
    calls = {"n": 0}

    async def expire_then_fail(bucket_id, amount, at=None):
        calls["n"] += 1
        if calls["n"] == 1:
            return await original(bucket_id, amount, at)
        # the first bucket passes its expiry and gets swept before the second decrement
        await CreditBucket.find_one(CreditBucket.id == soon.id).update(
            Set({CreditBucket.expires_at: now - timedelta(seconds=1)})
        )
        await ledger.sweeper.sweep(datetime.utcnow())
        raise StorageUnavailableError()

    monkeypatch.setattr(ledger.store, "decrement_bucket", expire_then_fail)
    with pytest.raises(StorageUnavailableError):
        await ledger.debits.charge("u1", 150)

    assert (await ledger.store.get(soon.id)).remaining == 0
    assert (await ledger.store.get(purchased.id)).remaining == 100
    voided = await CreditTransaction.find(
        CreditTransaction.type == TransactionType.SYSTEM_CLEANUP.value,
        CreditTransaction.source == "charge_rollback",
    ).to_list()
    assert len(voided) == 1
    assert voided[0].amount == 0
    assert voided[0].metadata["expired_amount"] == 100
    assert voided[0].related_bucket_ids == [str(soon.id)]
