"""Pure domain rules: tiers, pricing, cadence windows and results."""

from .cadence import CadenceWindow, is_redeemable, next_window_opens_at, window_for  # noqa: F401
from .pricing import ClaimAssessment, PriceQuote, RewardPricingResolver, RewardTerms, TierPriceTable  # noqa: F401
from .results import Failure, FailureCode, Result, Success  # noqa: F401
from .tiers import TierDefinition, TierLadder, TierResolution, TierResolver, resolve_tier  # noqa: F401

__all__ = [
    "CadenceWindow",
    "ClaimAssessment",
    "Failure",
    "FailureCode",
    "PriceQuote",
    "Result",
    "RewardPricingResolver",
    "RewardTerms",
    "Success",
    "TierDefinition",
    "TierLadder",
    "TierPriceTable",
    "TierResolution",
    "TierResolver",
    "is_redeemable",
    "next_window_opens_at",
    "resolve_tier",
    "window_for",
]
