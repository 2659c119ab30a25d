"""Purchasable credit bundles. Base credits never expire; the bonus part may."""

from pydantic import BaseModel, computed_field

from creditledger.core.exceptions import LedgerValidationError


class CreditBundle(BaseModel):
    id: str
    name: str
    price: int  # USD
    base_credits: int
    bonus_credits: int = 0
    requires_monthly_burn: int | None = None

    @computed_field
    @property
    def total_credits(self) -> int:
        return self.base_credits + self.bonus_credits

    @computed_field
    @property
    def price_per_million(self) -> float:
        return round(self.price / (self.total_credits / 1_000_000), 2)


CREDIT_BUNDLES = [
    CreditBundle(id="starter", name="Starter", price=10, base_credits=10_000_000),
    CreditBundle(id="basic", name="Basic", price=25, base_credits=25_000_000, bonus_credits=2_500_000),
    CreditBundle(id="pro", name="Pro", price=50, base_credits=50_000_000, bonus_credits=7_500_000),
    CreditBundle(id="business", name="Business", price=100, base_credits=100_000_000, bonus_credits=20_000_000),
    CreditBundle(
        id="enterprise",
        name="Enterprise",
        price=100,
        base_credits=100_000_000,
        bonus_credits=40_000_000,
        requires_monthly_burn=1_400_000,
    ),
]

_BY_ID = {b.id: b for b in CREDIT_BUNDLES}


def get_bundle(bundle_id: str) -> CreditBundle:
    bundle = _BY_ID.get(bundle_id)
    if bundle is None:
        raise LedgerValidationError(f"Unknown bundle: {bundle_id}", code="UNKNOWN_BUNDLE", details={"bundle_id": bundle_id})
    return bundle


def list_bundles(monthly_burn: int | None = None) -> list[dict]:
    """All bundles; with a known burn, each is flagged available or not."""
    out = []
    for bundle in CREDIT_BUNDLES:
        item = bundle.model_dump()
        if monthly_burn is not None:
            item["available"] = bundle.requires_monthly_burn is None or monthly_burn >= bundle.requires_monthly_burn
        out.append(item)
    return out
