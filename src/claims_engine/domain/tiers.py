"""Status tier ladder and locked-balance tier resolution.

Tiers partition the locked-token axis into contiguous ranges: a member sits
in the highest tier whose ``min_locked`` they meet, and the last tier is open
ended. Everything here is pure; the ladder is loaded from ``status_tiers`` by
:func:`load_ladder` and passed in explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Iterator, Sequence

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.models.tier import StatusTier

_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class TierDefinition:
    """Immutable snapshot of a configured status tier."""

    name: str
    display_name: str
    min_locked: Decimal
    sort_order: int
    badge_emoji: str | None = None
    benefits: tuple[str, ...] = field(default_factory=tuple)
    claims_per_month: int = 0

    @property
    def label(self) -> str:
        return f"{self.display_name} {self.badge_emoji}" if self.badge_emoji else self.display_name


NO_STATUS = TierDefinition(name="none", display_name="No status", min_locked=Decimal("0"), sort_order=-1)


class TierLadder:
    """Ordered, read-only collection of status tiers."""

    def __init__(self, tiers: Iterable[TierDefinition]) -> None:
        ordered = sorted(tiers, key=lambda tier: (tier.sort_order, tier.min_locked))
        names = [tier.name.lower() for tier in ordered]
        if len(set(names)) != len(names):
            raise ValueError("Tier names must be unique")
        self._tiers: tuple[TierDefinition, ...] = tuple(ordered)
        self._by_name = {tier.name.lower(): tier for tier in ordered}

    def __iter__(self) -> Iterator[TierDefinition]:
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    @property
    def tiers(self) -> tuple[TierDefinition, ...]:
        return self._tiers

    def get(self, name: str | None) -> TierDefinition | None:
        if not name:
            return None
        return self._by_name.get(name.lower())

    def rank_of(self, name: str | None) -> int:
        """Return the sort order for ``name``; unknown names rank below every tier."""

        tier = self.get(name)
        if tier is None:
            return NO_STATUS.sort_order
        return tier.sort_order

    def names(self) -> list[str]:
        return [tier.name for tier in self._tiers]


@dataclass(frozen=True, slots=True)
class TierResolution:
    tier: TierDefinition
    next_tier: TierDefinition | None
    progress_pct: Decimal
    amount_to_next_tier: Decimal

    @property
    def is_top_tier(self) -> bool:
        return self.next_tier is None


def resolve_tier(total_locked: Decimal | int, ladder: TierLadder | Sequence[TierDefinition]) -> TierResolution:
    """Resolve the member tier, next tier and progress for a locked balance."""

    locked = Decimal(total_locked)
    tiers = ladder.tiers if isinstance(ladder, TierLadder) else TierLadder(ladder).tiers

    current = NO_STATUS
    for tier in tiers:
        if tier.min_locked <= locked and tier.sort_order >= current.sort_order:
            current = tier

    upcoming = [tier for tier in tiers if tier.min_locked > locked]
    next_tier = min(upcoming, key=lambda tier: tier.sort_order) if upcoming else None

    if next_tier is None:
        return TierResolution(
            tier=current,
            next_tier=None,
            progress_pct=_HUNDRED,
            amount_to_next_tier=Decimal("0"),
        )

    span = next_tier.min_locked - current.min_locked
    if span <= 0:
        progress = Decimal("0")
    else:
        progress = (locked - current.min_locked) / span * _HUNDRED
    progress = max(Decimal("0"), min(_HUNDRED, progress))

    return TierResolution(
        tier=current,
        next_tier=next_tier,
        progress_pct=progress.quantize(Decimal("0.01")),
        amount_to_next_tier=max(Decimal("0"), next_tier.min_locked - locked),
    )


class TierResolver:
    """Bind a ladder once and resolve many locked balances against it."""

    def __init__(self, ladder: TierLadder) -> None:
        self._ladder = ladder

    @property
    def ladder(self) -> TierLadder:
        return self._ladder

    def resolve(self, total_locked: Decimal | int) -> TierResolution:
        return resolve_tier(total_locked, self._ladder)


DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    TierDefinition(
        name="bronze",
        display_name="Bronze",
        badge_emoji="\U0001f949",
        min_locked=Decimal("1000"),
        sort_order=1,
        benefits=("Access to bronze reward catalog", "1 reward claim per year", "Priority customer support"),
    ),
    TierDefinition(
        name="silver",
        display_name="Silver",
        badge_emoji="\U0001f948",
        min_locked=Decimal("2500"),
        sort_order=2,
        benefits=("Access to premium reward catalog", "4 reward claims per year", "Early access to new rewards"),
    ),
    TierDefinition(
        name="gold",
        display_name="Gold",
        badge_emoji="\U0001f947",
        min_locked=Decimal("5000"),
        sort_order=3,
        benefits=("Access to exclusive reward catalog", "1 reward claim per month", "VIP event invitations"),
        claims_per_month=1,
    ),
    TierDefinition(
        name="platinum",
        display_name="Platinum",
        badge_emoji="\U0001f48e",
        min_locked=Decimal("10000"),
        sort_order=4,
        benefits=("Access to platinum reward catalog", "2 reward claims per month", "Priority shipping"),
        claims_per_month=2,
    ),
    TierDefinition(
        name="diamond",
        display_name="Diamond",
        badge_emoji="\U0001f451",
        min_locked=Decimal("25000"),
        sort_order=5,
        benefits=("Access to diamond reward catalog", "Unlimited reward claims", "Free expedited shipping"),
        claims_per_month=5,
    ),
)


def tier_from_model(record: StatusTier) -> TierDefinition:
    return TierDefinition(
        name=record.name,
        display_name=record.display_name,
        badge_emoji=record.badge_emoji,
        min_locked=Decimal(record.min_locked or 0),
        sort_order=int(record.sort_order),
        benefits=tuple(str(item) for item in (record.benefits or [])),
        claims_per_month=int(record.claims_per_month or 0),
    )


async def load_ladder(session: AsyncSession) -> TierLadder:
    """Read active tiers from shared configuration storage."""

    stmt = (
        select(StatusTier)
        .where(StatusTier.is_active.is_(True))
        .order_by(StatusTier.sort_order.asc())
    )
    result = await session.execute(stmt)
    tiers = [tier_from_model(record) for record in result.scalars().all()]
    logger.debug("Loaded status tier ladder", count=len(tiers))
    return TierLadder(tiers)


async def seed_default_tiers(session: AsyncSession) -> int:
    """Insert any missing default tiers; existing rows are left untouched."""

    result = await session.execute(select(StatusTier.name))
    existing = {name.lower() for name in result.scalars().all()}
    created = 0
    for tier in DEFAULT_TIERS:
        if tier.name in existing:
            continue
        session.add(
            StatusTier(
                name=tier.name,
                display_name=tier.display_name,
                badge_emoji=tier.badge_emoji,
                min_locked=tier.min_locked,
                sort_order=tier.sort_order,
                benefits=list(tier.benefits),
                claims_per_month=tier.claims_per_month,
            )
        )
        created += 1
    await session.flush()
    logger.info("Seeded default status tiers", created=created)
    return created


__all__ = [
    "DEFAULT_TIERS",
    "NO_STATUS",
    "TierDefinition",
    "TierLadder",
    "TierResolution",
    "TierResolver",
    "load_ladder",
    "resolve_tier",
    "seed_default_tiers",
    "tier_from_model",
]
