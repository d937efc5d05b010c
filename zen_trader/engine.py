"""
Zen mode engine - the surface exposed to the API layer.

1. Receives requests to activate or deactivate zen mode for a user
2. Keeps the monitoring scheduler running while any enrollment is active
3. Exposes read-only order projections and taker-side fulfillment
"""
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .builder import FixedSpreadPricing, OrderBuilder, PricingRule
from .config import Settings
from .errors import OrderNotFoundError
from .executor import FulfillmentExecutor
from .journal import ActivityJournal
from .oracle import HttpMarketOracle, MarketOracle, StaticMarketOracle
from .policy import Policy, default_policy
from .resilience import STORE_SERVICE, BreakerRegistry, call_external
from .scheduler import MonitoringScheduler
from .schemas import (
    ActivationResult,
    Enrollment,
    FulfillmentResult,
    Order,
    OrderFilter,
    SchedulerState,
    TickReport,
    parse_preferences,
    utc_now,
)
from .signer import HmacOrderSigner, OrderSigner
from .storage import (
    EnrollmentStore,
    InMemoryEnrollmentStore,
    InMemoryOrderRepository,
    OrderRepository,
    SQLiteDatabase,
    SQLiteEnrollmentStore,
    SQLiteOrderRepository,
)
from .venue import ExecutionVenue, HttpExecutionVenue, PaperExecutionVenue

logger = logging.getLogger(__name__)


class ZenEngine:
    """Wires enrollments, policy, builder, scheduler and executor together."""

    def __init__(
        self,
        settings: Settings,
        enrollments: EnrollmentStore,
        orders: OrderRepository,
        oracle: MarketOracle,
        signer: OrderSigner,
        venue: ExecutionVenue,
        policy: Optional[Policy] = None,
        pricing: Optional[PricingRule] = None,
        journal: Optional[ActivityJournal] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.enrollments = enrollments
        self.orders = orders
        self.journal = journal
        self.clock = clock
        self.breakers = BreakerRegistry(
            fail_threshold=settings.breaker_fail_threshold,
            cooldown_sec=settings.breaker_cooldown_seconds,
        )

        self.builder = OrderBuilder(
            signer=signer,
            pricing=pricing or FixedSpreadPricing(settings.fee_numerator, settings.fee_denominator),
            chain_id=settings.chain_id,
            ttl_seconds=settings.order_ttl_seconds,
            signer_timeout=settings.signer_timeout_seconds,
            signer_breaker=self.breakers.get(signer.name),
        )
        self.scheduler = MonitoringScheduler(
            enrollments=enrollments,
            orders=orders,
            oracle=oracle,
            builder=self.builder,
            policy=policy or default_policy(settings.policy_window_seconds),
            tick_interval=settings.tick_interval_seconds,
            oracle_timeout=settings.oracle_timeout_seconds,
            repository_timeout=settings.repository_timeout_seconds,
            max_concurrency=settings.max_concurrent_enrollments,
            breakers=self.breakers,
            journal=journal,
            clock=clock,
        )
        self.executor = FulfillmentExecutor(
            orders=orders,
            venue=venue,
            submit_timeout=settings.submit_timeout_seconds,
            repository_timeout=settings.repository_timeout_seconds,
            venue_breaker=self.breakers.get(venue.name),
            journal=journal,
            clock=clock,
        )

    async def _store_call(self, func):
        return await call_external(STORE_SERVICE, func, self.settings.repository_timeout_seconds)

    async def start(self) -> SchedulerState:
        """Resume monitoring for enrollments persisted as active."""
        state = await self.scheduler.refresh()
        logger.info(f"Zen engine started, scheduler {state.value}")
        return state

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        logger.info("Zen engine stopped")

    async def activate(self, user_address: str, preferences: dict[str, Any]) -> ActivationResult:
        """
        Enroll a user in zen mode, or reactivate them with new preferences.

        Raises:
            DataError: if the preferences are malformed
        """
        logger.info(f"Activating zen mode for user: {user_address}")
        parse_preferences(preferences)

        now = self.clock()
        await self._store_call(lambda: self.enrollments.upsert(user_address, preferences, now))
        state = await self.scheduler.refresh()

        logger.info(f"Zen mode activated for: {user_address}")
        return ActivationResult(user_address=user_address, zen_mode_active=True, scheduler_state=state)

    async def deactivate(self, user_address: str) -> ActivationResult:
        logger.info(f"Deactivating zen mode for user: {user_address}")
        now = self.clock()
        await self._store_call(lambda: self.enrollments.deactivate(user_address, now))
        state = await self.scheduler.refresh()
        return ActivationResult(user_address=user_address, zen_mode_active=False, scheduler_state=state)

    async def get_enrollment(self, user_address: str) -> Optional[Enrollment]:
        return await self._store_call(lambda: self.enrollments.get(user_address))

    async def list_orders(self, order_filter: Optional[OrderFilter] = None) -> list[Order]:
        order_filter = order_filter or OrderFilter()
        now = self.clock()
        await self._store_call(lambda: self.orders.expire_stale(now))
        return await self._store_call(lambda: self.orders.list_orders(order_filter))

    async def get_order(self, order_id: str) -> Order:
        order = await self._store_call(lambda: self.orders.resolve(order_id, self.clock()))
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def fulfill(self, order_id: str) -> FulfillmentResult:
        return await self.executor.fulfill(order_id)

    async def tick(self) -> TickReport:
        return await self.scheduler.tick()

    def health(self) -> dict[str, Any]:
        return {
            "scheduler_state": self.scheduler.state.value,
            "last_tick": self.scheduler.last_report.finished_at.isoformat()
            if self.scheduler.last_report and self.scheduler.last_report.finished_at
            else None,
            "circuits": self.breakers.states(),
        }


def build_engine(settings: Settings, clock: Callable[[], datetime] = utc_now) -> ZenEngine:
    """
    Construct an engine from settings.

    Raises:
        FatalConfigurationError: if the signer secret is missing
    """
    signer = HmacOrderSigner(settings.require_signer(), settings.signer_address)

    if settings.storage_backend == "sqlite":
        db = SQLiteDatabase(settings.db_path)
        enrollments: EnrollmentStore = SQLiteEnrollmentStore(db)
        orders: OrderRepository = SQLiteOrderRepository(db)
    else:
        enrollments = InMemoryEnrollmentStore()
        orders = InMemoryOrderRepository()

    if settings.oracle_url:
        oracle: MarketOracle = HttpMarketOracle(settings.oracle_url, timeout=settings.oracle_timeout_seconds)
    else:
        logger.warning("ZEN_ORACLE_URL not set; using static market data")
        oracle = StaticMarketOracle()

    if settings.venue_url:
        venue: ExecutionVenue = HttpExecutionVenue(settings.venue_url, timeout=settings.submit_timeout_seconds)
    else:
        logger.warning("ZEN_VENUE_URL not set; fills are simulated by the paper venue")
        venue = PaperExecutionVenue(signer, clock=clock)

    journal = ActivityJournal(settings.journal_dir) if settings.journal_dir else None

    return ZenEngine(
        settings=settings,
        enrollments=enrollments,
        orders=orders,
        oracle=oracle,
        signer=signer,
        venue=venue,
        journal=journal,
        clock=clock,
    )
