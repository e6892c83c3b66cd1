"""Tier-aware reward pricing and claim eligibility.

All price, discount and affordability arithmetic lives here so hosting
surfaces never recompute it. Per-tier price overrides are stored as a closed,
versioned document (:class:`TierPriceTable`) rather than a free-form map.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, ValidationError

from claims_engine.domain.results import FailureCode
from claims_engine.domain.tiers import TierLadder


class TierPriceTable(BaseModel):
    """Version 1 of the per-tier Claims price document."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    prices: dict[str, NonNegativeInt] = Field(default_factory=dict)

    def price_for(self, tier_name: str | None) -> int | None:
        if not tier_name:
            return None
        return self.prices.get(tier_name.lower())

    @classmethod
    def parse_stored(cls, raw: Mapping[str, Any] | None) -> "TierPriceTable | None":
        """Parse a stored document, upgrading legacy flat ``{tier: price}`` maps."""

        if raw is None:
            return None
        payload = dict(raw)
        if "version" not in payload and "prices" not in payload:
            payload = {"version": 1, "prices": payload}
        table = cls.model_validate(payload)
        normalized = {name.lower(): price for name, price in table.prices.items()}
        return cls(version=table.version, prices=normalized)

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump()


@dataclass(frozen=True, slots=True)
class RewardTerms:
    """Pricing-relevant view of a reward, detached from persistence."""

    cost: int
    min_status_tier: str | None = None
    tier_prices: TierPriceTable | None = None
    stock_quantity: int | None = None
    is_active: bool = True

    @classmethod
    def from_model(cls, reward: Any) -> "RewardTerms":
        try:
            table = TierPriceTable.parse_stored(reward.tier_price_overrides)
        except ValidationError as error:
            # Unreadable override documents are ignored explicitly; base cost applies.
            logger.error(
                "Rejected malformed tier price overrides",
                reward_id=str(getattr(reward, "id", "")),
                error=str(error),
            )
            table = None
        return cls(
            cost=int(reward.cost),
            min_status_tier=reward.min_status_tier,
            tier_prices=table,
            stock_quantity=reward.stock_quantity,
            is_active=bool(reward.is_active),
        )


@dataclass(frozen=True, slots=True)
class PriceQuote:
    price: int
    is_free: bool
    discount_amount: int
    eligible: bool
    base_cost: int


@dataclass(frozen=True, slots=True)
class ClaimAssessment:
    """Price quote plus the first blocking reason, if any."""

    quote: PriceQuote
    can_claim: bool
    blocked_by: FailureCode | None = None
    reason: str | None = None
    shortfall: int = 0


@dataclass(frozen=True, slots=True)
class TierPricingValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class RewardPricingResolver:
    """Resolve what a reward costs a member and whether they may claim it."""

    def __init__(self, ladder: TierLadder) -> None:
        self._ladder = ladder

    def is_eligible(self, terms: RewardTerms, member_tier_name: str | None) -> bool:
        required = terms.min_status_tier
        if not required:
            return True
        if self._ladder.get(required) is None:
            logger.warning("Reward requires unknown status tier", required_tier=required)
            return False
        return self._ladder.rank_of(member_tier_name) >= self._ladder.rank_of(required)

    def price_for(self, terms: RewardTerms, member_tier_name: str | None) -> PriceQuote:
        override = terms.tier_prices.price_for(member_tier_name) if terms.tier_prices else None
        price = terms.cost if override is None else override
        return PriceQuote(
            price=price,
            is_free=price == 0,
            discount_amount=max(0, terms.cost - price),
            eligible=self.is_eligible(terms, member_tier_name),
            base_cost=terms.cost,
        )

    def assess(self, terms: RewardTerms, member_tier_name: str | None, balance: int) -> ClaimAssessment:
        quote = self.price_for(terms, member_tier_name)

        if not terms.is_active:
            return ClaimAssessment(
                quote=quote,
                can_claim=False,
                blocked_by=FailureCode.INVALID_STATE,
                reason="This reward is no longer available",
            )
        if terms.stock_quantity is not None and terms.stock_quantity <= 0:
            return ClaimAssessment(quote=quote, can_claim=False, blocked_by=FailureCode.OUT_OF_STOCK, reason="Out of stock")
        if not quote.eligible:
            required = self._ladder.get(terms.min_status_tier)
            label = required.display_name if required else terms.min_status_tier
            return ClaimAssessment(
                quote=quote,
                can_claim=False,
                blocked_by=FailureCode.INELIGIBLE,
                reason=f"Requires {label} status or higher",
            )
        if quote.price > balance:
            needed = quote.price - balance
            return ClaimAssessment(
                quote=quote,
                can_claim=False,
                blocked_by=FailureCode.INSUFFICIENT_BALANCE,
                reason=f"Need {needed} more claim{'s' if needed != 1 else ''}",
                shortfall=needed,
            )
        return ClaimAssessment(quote=quote, can_claim=True)

    def all_tier_prices(self, terms: RewardTerms) -> list[tuple[str, int]]:
        return [(tier.name, self.price_for(terms, tier.name).price) for tier in self._ladder]


def validate_tier_pricing(
    table: TierPriceTable,
    ladder: TierLadder,
    base_cost: int,
    *,
    require_all_tiers: bool = False,
) -> TierPricingValidation:
    """Check an admin-supplied price table against the ladder.

    Unknown tiers are rejected, a higher tier may never cost more than a lower
    one, and suspicious-but-legal tables produce warnings.
    """

    errors: list[str] = []
    warnings: list[str] = []
    known = {name.lower() for name in ladder.names()}

    for name in table.prices:
        if name.lower() not in known:
            errors.append(f"Unknown tier '{name}' in price table")

    if require_all_tiers:
        for tier in ladder:
            if table.price_for(tier.name) is None:
                errors.append(f"{tier.display_name} price is required")

    priced = [(tier, table.price_for(tier.name)) for tier in ladder]
    priced = [(tier, price) for tier, price in priced if price is not None]
    for (lower, lower_price), (higher, higher_price) in zip(priced, priced[1:]):
        if higher_price > lower_price:
            errors.append(
                f"{higher.display_name} ({higher_price}) should not cost more than "
                f"{lower.display_name} ({lower_price})"
            )

    if priced:
        lowest_tier, lowest_price = priced[0]
        if lowest_price > base_cost:
            warnings.append(f"{lowest_tier.display_name} price ({lowest_price}) exceeds base cost ({base_cost})")
        if len(priced) > 1 and all(price == lowest_price for _, price in priced) and lowest_price > 0:
            warnings.append("All tiers have the same price. Consider adding tier-based discounts.")

    return TierPricingValidation(errors=errors, warnings=warnings)


__all__ = [
    "ClaimAssessment",
    "PriceQuote",
    "RewardPricingResolver",
    "RewardTerms",
    "TierPriceTable",
    "TierPricingValidation",
    "validate_tier_pricing",
]
