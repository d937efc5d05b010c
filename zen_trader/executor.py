"""
Fulfillment executor - taker-side submission of signed orders.

Attempts on the same order id are serialized by a per-order lock, and every
status change goes through the repository's compare-and-swap transition, so
an order can leave CREATED exactly once. Repository reads and writes are
bounded by their own timeout. A venue timeout leaves the order in CREATED so
it can be retried before expiry, and anything observed after expiry ends in
EXPIRED rather than FAILED.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .errors import (
    AlreadyResolvedError,
    OrderExpiredError,
    OrderNotFoundError,
    SubmissionRejected,
    TransientExternalError,
    ZenTraderError,
)
from .journal import ActivityJournal
from .resilience import STORE_SERVICE, CircuitBreaker, call_external
from .schemas import FulfillmentResult, Order, OrderStatus, utc_now
from .storage import OrderRepository
from .venue import ExecutionVenue

logger = logging.getLogger(__name__)


class FulfillmentExecutor:
    """Submits signed orders to the execution venue and reconciles the result."""

    def __init__(
        self,
        orders: OrderRepository,
        venue: ExecutionVenue,
        submit_timeout: float = 60.0,
        repository_timeout: float = 5.0,
        venue_breaker: Optional[CircuitBreaker] = None,
        journal: Optional[ActivityJournal] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.orders = orders
        self.venue = venue
        self.submit_timeout = submit_timeout
        self.repository_timeout = repository_timeout
        self.venue_breaker = venue_breaker
        self.journal = journal
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    async def fulfill(self, order_id: str) -> FulfillmentResult:
        """
        Submit an order for on-chain execution.

        Returns the FILLED or FAILED result. A repeat call on a filled order
        returns the prior result without submitting again.

        Raises:
            OrderNotFoundError: unknown order id
            OrderExpiredError: the order is past its expiration
            AlreadyResolvedError: the order already failed or expired
            TransientExternalError: the venue or the repository timed out;
                the order stays CREATED
        """
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._waiters[order_id] = self._waiters.get(order_id, 0) + 1
        try:
            async with lock:
                result = await self._fulfill_locked(order_id)
        except ZenTraderError as e:
            if self.journal:
                self.journal.log_failed_attempt(order_id, e)
            raise
        finally:
            self._waiters[order_id] -= 1
            if self._waiters[order_id] == 0:
                del self._waiters[order_id]
                self._locks.pop(order_id, None)

        if self.journal:
            self.journal.log_fulfillment(result)
        return result

    async def _store(self, func):
        return await call_external(STORE_SERVICE, func, self.repository_timeout)

    async def _transition(self, order: Order, new: OrderStatus, **kwargs) -> Optional[Order]:
        return await self._store(
            lambda: self.orders.transition(order.id, OrderStatus.CREATED, new, self.clock(), **kwargs)
        )

    async def _fulfill_locked(self, order_id: str) -> FulfillmentResult:
        now = self.clock()
        order = await self._store(lambda: self.orders.resolve(order_id, now))
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.status == OrderStatus.FILLED:
            logger.info(f"Order {order_id} already filled; returning prior receipt")
            return FulfillmentResult(
                order_id=order.id, status=OrderStatus.FILLED, receipt=order.receipt, replayed=True
            )
        self._check_preconditions(order, now)

        try:
            receipt = await call_external(
                self.venue.name,
                lambda: self.venue.submit(order.signed_payload),
                self.submit_timeout,
                self.venue_breaker,
            )
        except SubmissionRejected as e:
            return await self._record_rejection(order, str(e))
        except TransientExternalError:
            logger.warning(f"Submission of order {order_id} did not complete; order stays created")
            raise

        return await self._record_fill(order, receipt)

    def _check_preconditions(self, order: Order, now: datetime) -> None:
        if order.status == OrderStatus.EXPIRED or order.is_past_expiry(now):
            raise OrderExpiredError(order.id, f"Order {order.id} expired at {order.expires_at.isoformat()}")
        if order.status != OrderStatus.CREATED:
            raise AlreadyResolvedError(order.id, f"Order {order.id} is already {order.status.value}")

    async def _conflict(self, order: Order) -> AlreadyResolvedError:
        current = await self._store(lambda: self.orders.get(order.id))
        status = current.status.value if current else "unknown"
        return AlreadyResolvedError(order.id, f"Order {order.id} changed to {status} concurrently")

    async def _record_expiry(self, order: Order, reason: str, receipt: Optional[str] = None) -> None:
        """Persist an expiry observed after submission and raise OrderExpiredError."""
        expired = await self._transition(order, OrderStatus.EXPIRED, receipt=receipt, failure_reason=reason)
        if expired is None:
            raise await self._conflict(order)
        logger.warning(f"Order {order.id} {reason}; marked expired")
        raise OrderExpiredError(order.id, f"Order {order.id} expired before submission completed")

    async def _record_fill(self, order: Order, receipt: str) -> FulfillmentResult:
        updated = await self._transition(order, OrderStatus.FILLED, receipt=receipt)
        if updated is not None:
            logger.info(f"ORDER FILLED: {order.id} receipt {receipt}")
            return FulfillmentResult(order_id=order.id, status=OrderStatus.FILLED, receipt=receipt)

        # The repository refuses FILLED past expiry.
        if order.is_past_expiry(self.clock()):
            await self._record_expiry(order, "confirmed after expiration", receipt=receipt)
        raise await self._conflict(order)

    async def _record_rejection(self, order: Order, reason: str) -> FulfillmentResult:
        if order.is_past_expiry(self.clock()):
            await self._record_expiry(order, f"rejected after expiration: {reason}")

        updated = await self._transition(order, OrderStatus.FAILED, failure_reason=reason)
        if updated is None:
            raise await self._conflict(order)
        logger.warning(f"ORDER FAILED: {order.id} rejected by venue: {reason}")
        return FulfillmentResult(order_id=order.id, status=OrderStatus.FAILED, error=reason)
