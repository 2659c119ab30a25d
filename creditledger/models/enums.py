from enum import Enum


class BucketType(str, Enum):
    PURCHASED = "purchased"
    BONUS = "bonus"
    REFERRAL = "referral"


# Drain tie-break among buckets expiring at the same moment: credit the user did
# not pay for goes first.
BUCKET_DRAIN_PRIORITY = {
    BucketType.REFERRAL: 0,
    BucketType.BONUS: 1,
    BucketType.PURCHASED: 2,
}


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    PROMPT_RUN = "prompt_run"
    FLOW_RUN = "flow_run"
    PROMPT_UNLOCK = "prompt_unlock"
    FLOW_UNLOCK = "flow_unlock"
    REFERRAL_BONUS = "referral_bonus"
    AUTOMATION_BONUS = "automation_bonus"
    CREATOR_PAYOUT = "creator_payout"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"
    SYSTEM_CLEANUP = "system_cleanup"
    EVENT = "event"


USAGE_TRANSACTION_TYPES = (TransactionType.PROMPT_RUN, TransactionType.FLOW_RUN)


class ItemType(str, Enum):
    PROMPT = "prompt"
    FLOW = "flow"
    COMPLETION = "completion"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


class PromptLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
