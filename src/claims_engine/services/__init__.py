"""Engine service exports."""

from .events import BalanceChanged, BalanceEventBus, get_event_bus  # noqa: F401
from .gifts import GiftReceipt, GiftStatistics, GiftWorkflow  # noqa: F401
from .ledger import ClaimsLedger, LedgerReceipt, decode_time_uuid_cursor, encode_time_uuid_cursor  # noqa: F401
from .locking import get_lock_registry, run_unit_of_work  # noqa: F401
from .members import MemberContext, MemberService  # noqa: F401
from .purchases import PurchaseService  # noqa: F401
from .rewards import RewardClaimReceipt, RewardClaimService  # noqa: F401
from .selections import SelectionManager, SelectionState, SlotSummary  # noqa: F401

__all__ = [
    "BalanceChanged",
    "BalanceEventBus",
    "ClaimsLedger",
    "GiftReceipt",
    "GiftStatistics",
    "GiftWorkflow",
    "LedgerReceipt",
    "MemberContext",
    "MemberService",
    "PurchaseService",
    "RewardClaimReceipt",
    "RewardClaimService",
    "SelectionManager",
    "SelectionState",
    "SlotSummary",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
    "get_event_bus",
    "get_lock_registry",
    "run_unit_of_work",
]
