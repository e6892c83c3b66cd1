import sys
from decimal import Decimal
from pathlib import Path
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import claims_engine.models  # noqa: E402,F401
from claims_engine.db.base import Base  # noqa: E402
from claims_engine.domain.tiers import seed_default_tiers  # noqa: E402
from claims_engine.models.member import Member  # noqa: E402
from claims_engine.models.reward import Reward  # noqa: E402
from claims_engine.observability.engine import get_engine_store  # noqa: E402
from claims_engine.observability.scheduler import get_scheduler_store  # noqa: E402
from claims_engine.services.events import get_event_bus  # noqa: E402
from claims_engine.services.ledger import ClaimsLedger  # noqa: E402
from claims_engine.services.locking import get_lock_registry  # noqa: E402
from claims_engine.services.members import MemberService  # noqa: E402


@pytest.fixture(autouse=True)
def reset_engine_state():
    def _reset() -> None:
        get_lock_registry().reset()
        get_engine_store().reset()
        get_scheduler_store().reset()
        get_event_bus().clear()

    _reset()
    yield
    _reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def seeded_tiers(session_factory):
    async with session_factory() as session:
        await seed_default_tiers(session)
        await session.commit()
    return session_factory


@pytest.fixture
def create_member(session_factory):
    """Create a member funded through the ledger so balances stay auditable."""

    async def _create(*, email: str | None = None, balance: int = 0, locked: int | str | None = None) -> UUID:
        async with session_factory() as session:
            member = Member(external_user_id=f"user-{uuid4()}", email=email)
            session.add(member)
            await session.commit()
            member_id = member.id

            if balance:
                funded = await ClaimsLedger(session).admin_credit(member_id, balance, f"seed:{member_id}")
                assert funded.ok
            if locked:
                position = await MemberService(session).lock_tokens(member_id, Decimal(str(locked)), source="360LOCK")
                assert position.ok
        return member_id

    return _create


@pytest.fixture
def create_reward(session_factory):
    async def _create(**overrides) -> UUID:
        values = {
            "slug": f"reward-{uuid4().hex[:10]}",
            "title": "Sponsor hoodie",
            "cost": 50,
            "is_active": True,
            "is_giveback": False,
        }
        values.update(overrides)
        async with session_factory() as session:
            reward = Reward(**values)
            session.add(reward)
            await session.commit()
            return reward.id

    return _create
