"""Pytest fixtures for payout engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from payout_engine.calculators import SignalsUnavailableError
from payout_engine.database import make_session_factory
from payout_engine.events import EventEmitter, RecordingHandler
from payout_engine.models import (
    Base,
    CurrencyRate,
    EarnedBadge,
    RequiredTraining,
    SettlementRecord,
    TrainingCompletion,
    WorkerProfile,
)
from payout_engine.providers import StubTransferProvider
from payout_engine.services import SettlementGate, SettlementService

CHEF_TRAINING_MODULE = "food-safety"


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payouts.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with make_session_factory(engine)() as session:
        session.add(RequiredTraining(role="chef", module_code=CHEF_TRAINING_MODULE))
        await session.commit()

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def provider() -> StubTransferProvider:
    return StubTransferProvider()


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def emitter(recorder: RecordingHandler) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(recorder)
    return emitter


@pytest.fixture
def gate(session_factory, provider, emitter) -> SettlementGate:
    return SettlementGate(
        session_factory,
        provider,
        emitter=emitter,
        transfer_timeout_seconds=1.0,
    )


@pytest.fixture
def service(session_factory, gate) -> SettlementService:
    return SettlementService(session_factory, gate)


# ============================================================================
# Data builders
# ============================================================================


MakeWorker = Callable[..., Awaitable[UUID]]
MakeSettlement = Callable[..., Awaitable[UUID]]


@pytest.fixture
def make_worker(session_factory) -> MakeWorker:
    """Create a chef profile with badges and training state."""

    async def _make(
        *,
        badges: tuple[str, ...] = (),
        trained: bool = True,
        tier_override: str | None = None,
        preferred_currency: str = "USD",
        currency_override: str | None = None,
        account: str | None = "acct_chef_001",
        payouts_enabled: bool = True,
        role: str = "chef",
    ) -> UUID:
        worker_id = uuid4()
        async with session_factory() as session:
            session.add(
                WorkerProfile(
                    worker_id=worker_id,
                    display_name="Test Chef",
                    role=role,
                    tier_override=tier_override,
                    preferred_payout_currency=preferred_currency,
                    payout_currency_override=currency_override,
                    payout_account_ref=account,
                    payouts_enabled=payouts_enabled,
                )
            )
            await session.flush()
            for badge in badges:
                session.add(EarnedBadge(worker_id=worker_id, badge_name=badge))
            if trained:
                session.add(
                    TrainingCompletion(worker_id=worker_id, module_code=CHEF_TRAINING_MODULE)
                )
            await session.commit()
        return worker_id

    return _make


@pytest.fixture
def make_settlement(session_factory) -> MakeSettlement:
    """Create a settlement record directly, bypassing the service."""

    async def _make(
        worker_id: UUID,
        *,
        base_cents: int = 10000,
        quote_cents: int = 15000,
        completed: bool = True,
        completed_by: str = "worker",
        bonus_override: bool = False,
        client_paid: bool = True,
    ) -> UUID:
        record = SettlementRecord(
            job_id=f"job-{uuid4().hex[:12]}",
            worker_id=worker_id,
            pre_tier_base_cents=base_cents,
            quote_total_cents=quote_cents,
            bonus_override=bonus_override,
            payout_status="pending" if base_cents > 0 else "not_applicable",
            payout_blockers=[],
            bonus_breakdown_json=[],
            job_completed_at=datetime.now(timezone.utc) if completed else None,
            job_completed_by=completed_by if completed else None,
            completion_confirmed_by_admin=completed and completed_by == "admin",
            client_fully_paid_at=datetime.now(timezone.utc) if client_paid else None,
        )
        async with session_factory() as session:
            session.add(record)
            await session.commit()
        return record.settlement_id

    return _make


@pytest.fixture
def add_history(session_factory) -> Callable[..., Awaitable[None]]:
    """Add past completed jobs: on_time ones finish early, late ones after schedule."""

    async def _add(worker_id: UUID, *, on_time: int, late: int = 0, days_ago: int = 30) -> None:
        start = datetime.now(timezone.utc) - timedelta(days=days_ago)
        async with session_factory() as session:
            for i in range(on_time + late):
                scheduled = start + timedelta(hours=i)
                delta = timedelta(minutes=-10) if i < on_time else timedelta(minutes=45)
                session.add(
                    SettlementRecord(
                        job_id=f"hist-{uuid4().hex[:12]}",
                        worker_id=worker_id,
                        pre_tier_base_cents=0,
                        quote_total_cents=0,
                        payout_status="not_applicable",
                        payout_blockers=[],
                        bonus_breakdown_json=[],
                        scheduled_at=scheduled,
                        job_completed_at=scheduled + delta,
                        job_completed_by="worker",
                    )
                )
            await session.commit()

    return _add


@pytest.fixture
def add_rate(session_factory) -> Callable[..., Awaitable[None]]:
    async def _add(to_code: str, rate: str, from_code: str = "USD") -> None:
        async with session_factory() as session:
            session.add(
                CurrencyRate(
                    from_code=from_code,
                    to_code=to_code,
                    rate=Decimal(rate),
                    fetched_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    return _add


# ============================================================================
# Fake signals provider
# ============================================================================


class FakeSignals:
    """In-memory eligibility signals for calculator tests."""

    def __init__(self) -> None:
        self.badges: set[str] = set()
        self.training_complete = True
        self.ratios: dict[int, float | None] = {}
        self.unavailable = False
        self.calls: list[str] = []

    def _check(self, worker_id: UUID, call: str) -> None:
        self.calls.append(call)
        if self.unavailable:
            raise SignalsUnavailableError(worker_id, "provider down")

    async def get_badges(self, worker_id: UUID) -> set[str]:
        self._check(worker_id, "get_badges")
        return set(self.badges)

    async def has_completed_required_training(self, worker_id: UUID, role: str) -> bool:
        self._check(worker_id, "training")
        return self.training_complete

    async def on_time_ratio(self, worker_id: UUID, window_size: int) -> float | None:
        self._check(worker_id, f"on_time:{window_size}")
        return self.ratios.get(window_size)


@pytest.fixture
def fake_signals() -> FakeSignals:
    return FakeSignals()
