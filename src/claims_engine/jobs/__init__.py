"""Recurring housekeeping job entrypoints."""

from .allocations import distribute_monthly_tier_claims  # noqa: F401
from .gifts import expire_pending_gifts  # noqa: F401
from .ledger_audit import audit_ledger_balances  # noqa: F401

JOB_REGISTRY = {
    "gift-expiry": expire_pending_gifts,
    "tier-allocation": distribute_monthly_tier_claims,
    "ledger-audit": audit_ledger_balances,
}

__all__ = [
    "JOB_REGISTRY",
    "audit_ledger_balances",
    "distribute_monthly_tier_claims",
    "expire_pending_gifts",
]
