"""Referral linking, qualification and config."""

import pytest

from creditledger.core.exceptions import LedgerValidationError
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.enums import BucketType, ReferralStatus
from creditledger.models.referral import Referral
from creditledger.services.debit import ChargeMetadata


async def _link(ledger):
    alice = await ledger.referrals.process_new_user_signup("alice", email="alice@example.com")
    bob = await ledger.referrals.process_new_user_signup("bob", referral_code=alice["referral_code"].lower())
    return alice, bob


async def test_signup_links_referrer(ledger):
    alice, bob = await _link(ledger)
    assert alice["status"] == "no_code"
    assert bob["status"] == "linked"
    assert bob["referrer_id"] == "alice"
    referral = await Referral.find_one(Referral.referred_id == "bob")
    assert referral.referrer_id == "alice"
    assert referral.status == ReferralStatus.PENDING


async def test_signup_ignores_unknown_and_self_codes(ledger):
    alice = await ledger.referrals.process_new_user_signup("alice")
    assert (await ledger.referrals.process_new_user_signup("bob", referral_code="NOPE"))["status"] == "invalid_code"
    again = await ledger.referrals.process_new_user_signup("alice", referral_code=alice["referral_code"])
    assert again["status"] == "self_referral"
    assert await Referral.find_all().count() == 0


async def test_link_is_never_replaced(ledger):
    await _link(ledger)
    carol = await ledger.referrals.process_new_user_signup("carol")
    result = await ledger.referrals.process_new_user_signup("bob", referral_code=carol["referral_code"])
    assert result["status"] == "already_referred"
    assert result["referrer_id"] == "alice"


async def test_referral_rewarded_once_after_min_spend(ledger):
    await _link(ledger)
    await ledger.credits.grant("bob", 50_000, BucketType.PURCHASED, "purchase")

    assert await ledger.referrals.process_qualifying_referrals() == 0

    await ledger.debits.charge("bob", 10_000, ChargeMetadata())
    assert await ledger.referrals.process_qualifying_referrals() == 1
    assert await ledger.referrals.process_qualifying_referrals() == 0

    assert await ledger.get_user_total_credits("alice") == 50_000
    assert await ledger.get_user_total_credits("bob") == 60_000
    assert await CreditBucket.find(CreditBucket.user_id == "alice").count() == 1
    referral = await Referral.find_one(Referral.referred_id == "bob")
    assert referral.status == ReferralStatus.COMPLETE
    assert referral.credits_awarded == 50_000
    assert referral.completed_at is not None


async def test_rerun_after_partial_failure_does_not_double_grant(ledger):
    """Bonuses are keyed by referral id, so a referral left pending after its grants pays nothing twice."""
    await _link(ledger)
    await ledger.credits.grant("bob", 20_000, BucketType.PURCHASED, "purchase")
    await ledger.debits.charge("bob", 15_000, ChargeMetadata())
    referral = await Referral.find_one(Referral.referred_id == "bob")
    config = await ledger.referrals.get_referral_config()
    # grants done, status update lost
    await ledger.referrals._complete_if_qualified(referral, config, now=referral.created_at)
    await Referral.find_one(Referral.id == referral.id).update({"$set": {"status": "pending"}})

    await ledger.referrals.process_qualifying_referrals()
    assert await ledger.get_user_total_credits("alice") == 50_000


async def test_referral_stats(ledger):
    await _link(ledger)
    stats = await ledger.referrals.referral_stats("alice")
    assert stats["referred_count"] == 1
    assert stats["completed_count"] == 0
    assert stats["total_referral_credits"] == 0


async def test_config_defaults_and_update(ledger):
    config = await ledger.referrals.get_referral_config()
    assert (config.inviter_bonus, config.invitee_bonus, config.min_spend_requirement) == (50_000, 20_000, 10_000)

    updated = await ledger.referrals.update_referral_config({"inviterBonus": 75_000})
    assert updated.inviter_bonus == 75_000
    assert (await ledger.referrals.get_referral_config()).inviter_bonus == 75_000
    assert (await ledger.referrals.get_referral_config()).invitee_bonus == 20_000

    with pytest.raises(LedgerValidationError):
        await ledger.referrals.update_referral_config({"inviter_bonus": -1})


async def test_welcome_bonus_granted_once(ledger):
    await ledger.referrals.update_referral_config({"welcome_bonus": 1_000})
    first = await ledger.referrals.process_new_user_signup("dave")
    second = await ledger.referrals.process_new_user_signup("dave")
    assert first["credits_awarded"] == second["credits_awarded"] == 1_000
    assert await ledger.get_user_total_credits("dave") == 1_000


async def test_storage_failure_after_code_collision_is_reported(ledger, monkeypatch):
    from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

    from creditledger.core.exceptions import StorageUnavailableError
    from creditledger.models.user import User

    calls = {"n": 0}

    async def find_one(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] <= 2:
            return None  # no such user yet, code unused
        raise ServerSelectionTimeoutError("mongo down")

    async def insert(self, *args, **kwargs):
        raise DuplicateKeyError("duplicate referral_code")

    monkeypatch.setattr(User, "find_one", find_one)
    monkeypatch.setattr(User, "insert", insert)
    with pytest.raises(StorageUnavailableError):
        await ledger.referrals.ensure_user("carol")
