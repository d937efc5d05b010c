"""
Shared fixtures for zen_trader tests.

Provides a controllable clock, in-memory stores, a static oracle, the HMAC
signer and factories for builders, schedulers and engines.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

root_dir = Path(__file__).parent.parent
if str(root_dir) not in sys.path:
    sys.path.insert(0, str(root_dir))

import pytest
import pytest_asyncio

from zen_trader.builder import FixedSpreadPricing, OrderBuilder
from zen_trader.config import Settings
from zen_trader.engine import ZenEngine
from zen_trader.oracle import StaticMarketOracle
from zen_trader.policy import default_policy
from zen_trader.resilience import BreakerRegistry
from zen_trader.scheduler import MonitoringScheduler
from zen_trader.schemas import Order, OrderStatus, OrderTerms, SignedOrder
from zen_trader.signer import HmacOrderSigner
from zen_trader.storage import InMemoryEnrollmentStore, InMemoryOrderRepository
from zen_trader.venue import PaperExecutionVenue

pytest_plugins = ('pytest_asyncio',)

T0 = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
MAKER = "0x1111111111111111111111111111111111111111"
PREFS = {"token": "A", "takerToken": "B", "amount": 100}


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        signer_secret="test-secret",
        storage_backend="memory",
        journal_dir=None,
        tick_interval_seconds=3600,
        policy_window_seconds=300,
        oracle_timeout_seconds=0.2,
        signer_timeout_seconds=0.2,
        repository_timeout_seconds=0.5,
        submit_timeout_seconds=0.2,
    )


@pytest.fixture
def signer():
    return HmacOrderSigner("test-secret")


@pytest.fixture
def oracle():
    return StaticMarketOracle(prices={"A": 2.0, "B": 1.0}, default_balance=10_000)


@pytest.fixture
def enrollments():
    return InMemoryEnrollmentStore()


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def builder(signer):
    return OrderBuilder(
        signer=signer,
        pricing=FixedSpreadPricing(100, 99),
        chain_id=8453,
        ttl_seconds=86_400,
        signer_timeout=0.2,
    )


@pytest.fixture
def make_scheduler(enrollments, orders, oracle, builder, clock):
    """Factory so tests can swap a single collaborator."""
    def _make(**overrides) -> MonitoringScheduler:
        params = dict(
            enrollments=enrollments,
            orders=orders,
            oracle=oracle,
            builder=builder,
            policy=default_policy(300),
            tick_interval=3600,
            oracle_timeout=0.2,
            repository_timeout=0.5,
            breakers=BreakerRegistry(fail_threshold=100, cooldown_sec=60),
            clock=clock,
        )
        params.update(overrides)
        return MonitoringScheduler(**params)
    return _make


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def make_engine(settings, enrollments, orders, oracle, signer, clock):
    def _make(**overrides) -> ZenEngine:
        params = dict(
            settings=settings,
            enrollments=enrollments,
            orders=orders,
            oracle=oracle,
            signer=signer,
            venue=PaperExecutionVenue(signer, clock=clock),
            clock=clock,
        )
        params.update(overrides)
        return ZenEngine(**params)
    return _make


@pytest_asyncio.fixture
async def engine(make_engine):
    eng = make_engine()
    yield eng
    await eng.shutdown()


def build_order(
    signer: HmacOrderSigner,
    created_at: datetime = T0,
    ttl: timedelta = timedelta(hours=24),
    user_address: str = MAKER,
    making_amount: int = 100,
    nonce: int = 7,
) -> Order:
    """Build a signed order directly, bypassing the scheduler."""
    expires_at = created_at + ttl
    terms = OrderTerms(
        maker=user_address,
        maker_asset="A",
        taker_asset="B",
        making_amount=making_amount,
        taking_amount=making_amount * 100 // 99,
        expiration=int(expires_at.timestamp()),
        nonce=nonce,
        chain_id=8453,
    )
    return Order(
        user_address=user_address,
        maker_asset="A",
        taker_asset="B",
        making_amount=terms.making_amount,
        taking_amount=terms.taking_amount,
        signed_payload=SignedOrder(terms=terms, signature=signer._digest(terms)),
        status=OrderStatus.CREATED,
        expires_at=expires_at,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture
def make_order(signer):
    def _make(created_at: Optional[datetime] = None, **kwargs) -> Order:
        return build_order(signer, created_at=created_at or T0, **kwargs)
    return _make
