"""Fatal engine conditions that warrant operator attention."""

from __future__ import annotations

from uuid import UUID


class EngineError(RuntimeError):
    """Base class for unexpected engine failures."""


class LedgerIntegrityError(EngineError):
    """Materialized balance disagrees with the ledger or went negative."""

    def __init__(self, member_id: UUID, *, materialized: int, ledger_sum: int) -> None:
        super().__init__(
            f"Ledger integrity violation for member {member_id}: "
            f"materialized={materialized} ledger_sum={ledger_sum}"
        )
        self.member_id = member_id
        self.materialized = materialized
        self.ledger_sum = ledger_sum


class StorageUnavailableError(EngineError):
    """The backing store rejected an operation for reasons other than contention."""


class LockContentionError(EngineError):
    """A bounded lock wait elapsed; converted to a retryable failure by services."""

    def __init__(self, keys: tuple[str, ...], timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.2f}s waiting for {', '.join(keys)}")
        self.keys = keys
        self.timeout = timeout
