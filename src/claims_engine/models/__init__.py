"""SQLAlchemy models package."""

from .gift import Gift, GiftStatus  # noqa: F401
from .ledger import LedgerEntry, LedgerReason  # noqa: F401
from .member import Member, TokenLock  # noqa: F401
from .reward import (  # noqa: F401
    ClaimPackage,
    Reward,
    RewardCadence,
    RewardClaim,
    RewardClaimStatus,
)
from .selection import RewardSelection, SelectionProgram, SelectionRedemption  # noqa: F401
from .tier import StatusTier  # noqa: F401
