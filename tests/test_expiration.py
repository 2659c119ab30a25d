"""Expiration sweeper and the lazy sweep on balance reads."""

from datetime import datetime, timedelta

from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.enums import BucketType, TransactionType


async def _seed(ledger, now):
    expired = await ledger.store.create_bucket(
        "u1", BucketType.REFERRAL, 5000, "referral_bonus", expires_at=now - timedelta(days=1)
    )
    live = await ledger.store.create_bucket("u1", BucketType.PURCHASED, 7000, "purchase")
    other = await ledger.store.create_bucket(
        "u2", BucketType.BONUS, 300, "bonus", expires_at=now - timedelta(hours=2)
    )
    return expired, live, other


async def test_sweep_zeroes_expired_and_logs_cleanup(ledger):
    now = datetime.utcnow()
    expired, live, other = await _seed(ledger, now)

    assert await ledger.sweeper.sweep(now) == 2

    assert (await ledger.store.get(expired.id)).remaining == 0
    assert (await ledger.store.get(other.id)).remaining == 0
    assert (await ledger.store.get(live.id)).remaining == 7000
    cleanup = await CreditTransaction.find(CreditTransaction.type == TransactionType.SYSTEM_CLEANUP.value).to_list()
    assert len(cleanup) == 2
    assert all(t.amount == 0 for t in cleanup)
    assert sorted(t.metadata["expired_amount"] for t in cleanup) == [300, 5000]


async def test_sweep_twice_equals_sweep_once(ledger):
    now = datetime.utcnow()
    await _seed(ledger, now)
    await ledger.sweeper.sweep(now)
    snapshot = sorted((str(b.id), b.remaining) for b in await CreditBucket.find_all().to_list())
    txn_count = await CreditTransaction.find_all().count()

    assert await ledger.sweeper.sweep(now) == 0

    assert sorted((str(b.id), b.remaining) for b in await CreditBucket.find_all().to_list()) == snapshot
    assert await CreditTransaction.find_all().count() == txn_count


async def test_sweep_user_only_touches_that_user(ledger):
    now = datetime.utcnow()
    expired, _, other = await _seed(ledger, now)
    assert await ledger.sweeper.sweep_user("u1", now) == 1
    assert (await ledger.store.get(expired.id)).remaining == 0
    assert (await ledger.store.get(other.id)).remaining == 300


async def test_balance_never_counts_dead_credit(ledger):
    now = datetime.utcnow()
    await _seed(ledger, now)
    assert await ledger.get_user_total_credits("u1") == 7000
    buckets = await ledger.store.list_buckets("u1", include_expired=True)
    assert sum(b.remaining for b in buckets) == 7000
    assert await ledger.get_user_credit_breakdown("u1") == {"purchased": 7000, "bonus": 0, "referral": 0}


async def test_failed_cleanup_log_leaves_bucket_for_next_run(ledger, monkeypatch):
    from creditledger.core.exceptions import StorageUnavailableError

    now = datetime.utcnow()
    bucket = await ledger.store.create_bucket(
        "u1", BucketType.BONUS, 500, "bonus", expires_at=now - timedelta(days=1)
    )
    healthy_append = ledger.transactions.append

    async def broken_append(**kwargs):
        raise StorageUnavailableError()

    monkeypatch.setattr(ledger.transactions, "append", broken_append)
    assert await ledger.sweeper.sweep(now) == 0
    assert (await ledger.store.get(bucket.id)).remaining == 500

    monkeypatch.setattr(ledger.transactions, "append", healthy_append)
    assert await ledger.sweeper.sweep(now) == 1
    assert (await ledger.store.get(bucket.id)).remaining == 0
    cleanup = await CreditTransaction.find(CreditTransaction.type == TransactionType.SYSTEM_CLEANUP.value).to_list()
    assert [t.metadata["expired_amount"] for t in cleanup] == [500]


async def test_one_failing_bucket_does_not_stop_the_sweep(ledger, monkeypatch):
    from creditledger.core.exceptions import StorageUnavailableError

    now = datetime.utcnow()
    stuck = await ledger.store.create_bucket(
        "u1", BucketType.BONUS, 10, "bonus", expires_at=now - timedelta(days=3)
    )
    good = await ledger.store.create_bucket(
        "u2", BucketType.BONUS, 10, "bonus", expires_at=now - timedelta(days=1)
    )
    original = ledger.store.void_bucket

    async def void_or_fail(bucket, at):
        if bucket.id == stuck.id:
            raise StorageUnavailableError()
        return await original(bucket, at)

    monkeypatch.setattr(ledger.store, "void_bucket", void_or_fail)
    ledger.sweeper.batch_size = 1

    assert await ledger.sweeper.sweep(now) == 1
    assert (await ledger.store.get(good.id)).remaining == 0
    assert (await ledger.store.get(stuck.id)).remaining == 10
