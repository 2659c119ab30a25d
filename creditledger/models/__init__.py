from creditledger.models.catalog import FlowListing, PromptListing
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.failed_job import FailedJob
from creditledger.models.flow_unlock import FlowUnlock
from creditledger.models.referral import Referral
from creditledger.models.system_config import SystemConfig
from creditledger.models.user import User

__all__ = [
    "User",
    "CreditBucket",
    "CreditTransaction",
    "Referral",
    "SystemConfig",
    "PromptListing",
    "FlowListing",
    "FlowUnlock",
    "FailedJob",
]
