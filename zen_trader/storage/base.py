"""
Storage interfaces for enrollments and orders.

The order repository is the single source of truth for order status. Its
transition() is a compare-and-swap: it only applies when the persisted status
still matches the expected one, which is what serializes fulfillment attempts
without external locking.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from ..schemas import Enrollment, Order, OrderFilter, OrderStatus


class EnrollmentStore(ABC):
    """Durable mapping of user address -> enrollment. One row per user."""

    @abstractmethod
    async def upsert(self, user_address: str, preferences: dict[str, Any], now: datetime) -> Enrollment:
        """Create the enrollment or reactivate it with new preferences."""

    @abstractmethod
    async def deactivate(self, user_address: str, now: datetime) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def get(self, user_address: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    async def list_active(self) -> list[Enrollment]:
        """Snapshot of all active enrollments, read in one pass."""

    @abstractmethod
    async def count_active(self) -> int:
        ...

    @abstractmethod
    async def mark_checked(self, user_address: str, checked_at: datetime) -> None:
        ...


def check_transition(expected: OrderStatus, new: OrderStatus) -> None:
    """Only created -> terminal moves exist."""
    if expected != OrderStatus.CREATED or not new.is_terminal:
        raise ValueError(f"illegal order transition {expected.value} -> {new.value}")


class OrderRepository(ABC):
    """Durable store of signed orders and their fulfillment state."""

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Persist a new order. Raises ValueError if the id already exists."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def list_orders(self, order_filter: OrderFilter) -> list[Order]:
        """Orders matching the filter, newest first."""

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        now: datetime,
        receipt: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Atomically move an order from `expected` to `new`.

        Returns the updated order, or None when the persisted status no longer
        matches `expected`. A move to FILLED is also refused once `now` is past
        the order's expiration.
        """

    @abstractmethod
    async def expire_stale(self, now: datetime) -> int:
        """Mark every created order past its expiration as expired."""

    async def resolve(self, order_id: str, now: datetime) -> Optional[Order]:
        """Read an order, persisting the lazy expiry correction if it applies."""
        order = await self.get(order_id)
        if order is None or order.effective_status(now) == order.status:
            return order

        updated = await self.transition(order_id, OrderStatus.CREATED, OrderStatus.EXPIRED, now)
        return updated or await self.get(order_id)
