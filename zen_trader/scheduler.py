"""
Monitoring scheduler - the only driver of time-based behavior.

Runs while at least one enrollment is active. Each tick re-reads the active
enrollment set from the store, evaluates the policy per enrollment, builds and
persists orders, and only then advances the enrollment's last_checked_at.
One enrollment's failure never affects another's processing.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .builder import OrderBuilder
from .errors import (
    BuildError,
    BuildFailure,
    DataError,
    PermanentExternalError,
    TransientExternalError,
)
from .journal import ActivityJournal
from .oracle import MarketOracle
from .policy import Policy, PolicyDecision
from .resilience import STORE_SERVICE, BreakerRegistry, call_external
from .schemas import Enrollment, EnrollmentOutcome, SchedulerState, TickReport, utc_now
from .storage import EnrollmentStore, OrderRepository

logger = logging.getLogger(__name__)


class MonitoringScheduler:
    """
    Fixed-cadence loop over active enrollments.

    States:
    - IDLE: no active enrollments, no timer
    - RUNNING: timer armed, one tick per interval

    Ticks never overlap: a tick requested while another is running waits
    for it to finish.
    """

    def __init__(
        self,
        enrollments: EnrollmentStore,
        orders: OrderRepository,
        oracle: MarketOracle,
        builder: OrderBuilder,
        policy: Policy,
        tick_interval: float = 30.0,
        oracle_timeout: float = 10.0,
        repository_timeout: float = 5.0,
        max_concurrency: int = 16,
        breakers: Optional[BreakerRegistry] = None,
        journal: Optional[ActivityJournal] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.enrollments = enrollments
        self.orders = orders
        self.oracle = oracle
        self.builder = builder
        self.policy = policy
        self.tick_interval = tick_interval
        self.oracle_timeout = oracle_timeout
        self.repository_timeout = repository_timeout
        self.max_concurrency = max_concurrency
        self.breakers = breakers or BreakerRegistry()
        self.journal = journal
        self.clock = clock

        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._draining: set[asyncio.Task] = set()
        self.last_report: Optional[TickReport] = None

    @property
    def state(self) -> SchedulerState:
        return SchedulerState.RUNNING if self._task is not None else SchedulerState.IDLE

    async def refresh(self) -> SchedulerState:
        """Re-evaluate IDLE/RUNNING against the current active enrollment count."""
        count = await call_external(STORE_SERVICE, self.enrollments.count_active, self.repository_timeout)
        if count >= 1 and self._task is None:
            self._start()
        elif count == 0 and self._task is not None:
            self._request_stop()
        return self.state

    def _start(self) -> None:
        stop = asyncio.Event()
        self._stop_event = stop
        self._task = asyncio.create_task(self._run(stop), name="zen-monitor")
        logger.info(f"Starting market monitoring (every {self.tick_interval}s)")

    def _request_stop(self) -> None:
        """Disarm the timer. An in-progress tick runs to completion."""
        if self._task is None:
            return
        self._stop_event.set()
        self._draining.add(self._task)
        self._task.add_done_callback(self._draining.discard)
        self._task = None
        self._stop_event = None
        logger.info("Market monitoring stopped - no active zen mode users")

    async def stop(self) -> None:
        """Stop monitoring and wait for any in-progress tick."""
        self._request_stop()
        if self._draining:
            await asyncio.gather(*self._draining, return_exceptions=True)

    async def _run(self, stop: asyncio.Event) -> None:
        """Tick once per interval until stopped; the first tick comes after one interval."""
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.tick_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                report = await self.tick()
                if not report.outcomes and not stop.is_set():
                    await self.refresh()
            except Exception as e:
                logger.exception(f"Market monitoring error: {e}")

    async def tick(self) -> TickReport:
        """Run one evaluation cycle over every active enrollment."""
        async with self._tick_lock:
            started = self.clock()
            report = TickReport(started_at=started)
            report.orders_expired = await self._sweep_expired(started)

            try:
                active = await call_external(STORE_SERVICE, self.enrollments.list_active, self.repository_timeout)
            except TransientExternalError as e:
                logger.warning(f"Skipping tick, enrollment store unavailable: {e}")
                report.finished_at = self.clock()
                self.last_report = report
                return report

            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def bounded(enrollment: Enrollment):
                async with semaphore:
                    return await self._process(enrollment)

            results = await asyncio.gather(*(bounded(e) for e in active))

            for enrollment, (outcome, order_id, detail) in zip(active, results):
                report.outcomes[enrollment.user_address] = outcome
                if order_id:
                    report.orders_created.append(order_id)
                if self.journal:
                    self.journal.log_decision(enrollment.user_address, outcome, order_id, detail)

            report.finished_at = self.clock()
            self.last_report = report
            logger.info(
                f"Tick complete: {len(active)} enrollments, {len(report.orders_created)} orders created, "
                f"{report.count(EnrollmentOutcome.SKIPPED)} skipped, {report.count(EnrollmentOutcome.FAILED)} failed"
            )
            return report

    async def _sweep_expired(self, now: datetime) -> int:
        """Move created orders past their expiration to expired."""
        try:
            expired = await call_external(
                STORE_SERVICE, lambda: self.orders.expire_stale(now), self.repository_timeout
            )
        except TransientExternalError as e:
            logger.warning(f"Expiry sweep skipped: {e}")
            return 0
        if expired:
            logger.info(f"Expired {expired} stale orders")
        return expired

    async def _process(self, enrollment: Enrollment) -> tuple[EnrollmentOutcome, Optional[str], str]:
        """Evaluate one enrollment. Never raises."""
        user = enrollment.user_address
        try:
            return await self._evaluate_and_build(enrollment)
        except (DataError, BuildError) as e:
            if isinstance(e, BuildError) and e.reason == BuildFailure.SIGNING_FAILED:
                logger.error(f"Signing failed for {user}: {e}")
                return EnrollmentOutcome.FAILED, None, str(e)
            logger.warning(f"Enrollment {user} not evaluable: {e}")
            return EnrollmentOutcome.NOT_EVALUABLE, None, str(e)
        except TransientExternalError as e:
            logger.warning(f"Skipping {user} this tick: {e}")
            return EnrollmentOutcome.SKIPPED, None, str(e)
        except PermanentExternalError as e:
            logger.error(f"Error processing user {user}: {e}")
            return EnrollmentOutcome.FAILED, None, str(e)
        except Exception as e:
            logger.exception(f"Unexpected error processing user {user}: {e}")
            return EnrollmentOutcome.FAILED, None, f"{type(e).__name__}: {e}"

    async def _evaluate_and_build(self, enrollment: Enrollment) -> tuple[EnrollmentOutcome, Optional[str], str]:
        user = enrollment.user_address
        prefs = enrollment.parse_preferences()
        oracle_breaker = self.breakers.get(self.oracle.name)

        market = await call_external(
            self.oracle.name, self.oracle.get_market_snapshot, self.oracle_timeout, oracle_breaker
        )
        balance = await call_external(
            self.oracle.name,
            lambda: self.oracle.get_balance(user, prefs.maker_token),
            self.oracle_timeout,
            oracle_breaker,
        )

        now = self.clock()
        decision = self.policy.evaluate(enrollment, market, balance, now)
        if decision == PolicyDecision.NOT_EVALUABLE:
            return EnrollmentOutcome.NOT_EVALUABLE, None, "policy could not evaluate enrollment"
        if decision == PolicyDecision.HOLD:
            return EnrollmentOutcome.HELD, None, ""

        order = await self.builder.build(enrollment, market, balance, now)
        await call_external(STORE_SERVICE, lambda: self.orders.save(order), self.repository_timeout)

        try:
            await call_external(
                STORE_SERVICE,
                lambda: self.enrollments.mark_checked(user, order.created_at),
                self.repository_timeout,
            )
        except Exception as e:
            logger.warning(f"Order {order.id} saved but last check for {user} not recorded: {e}")

        logger.info(f"Order created for {user}: {order.id}")
        return EnrollmentOutcome.ORDER_CREATED, order.id, ""
