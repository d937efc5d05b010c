"""
In-process storage backends. State lives for the lifetime of the process.
"""
import asyncio
from datetime import datetime
from typing import Any, Optional

from ..schemas import Enrollment, Order, OrderFilter, OrderStatus
from .base import EnrollmentStore, OrderRepository, check_transition


class InMemoryEnrollmentStore(EnrollmentStore):
    def __init__(self):
        self._rows: dict[str, Enrollment] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, user_address: str, preferences: dict[str, Any], now: datetime) -> Enrollment:
        async with self._lock:
            existing = self._rows.get(user_address)
            if existing is None:
                row = Enrollment(
                    user_address=user_address,
                    preferences=dict(preferences),
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row = existing.model_copy(
                    update={"preferences": dict(preferences), "is_active": True, "updated_at": now}
                )
            self._rows[user_address] = row
            return row.model_copy(deep=True)

    async def deactivate(self, user_address: str, now: datetime) -> Optional[Enrollment]:
        async with self._lock:
            existing = self._rows.get(user_address)
            if existing is None:
                return None
            row = existing.model_copy(update={"is_active": False, "updated_at": now})
            self._rows[user_address] = row
            return row.model_copy(deep=True)

    async def get(self, user_address: str) -> Optional[Enrollment]:
        row = self._rows.get(user_address)
        return row.model_copy(deep=True) if row else None

    async def list_active(self) -> list[Enrollment]:
        async with self._lock:
            return [row.model_copy(deep=True) for row in self._rows.values() if row.is_active]

    async def count_active(self) -> int:
        return sum(1 for row in self._rows.values() if row.is_active)

    async def mark_checked(self, user_address: str, checked_at: datetime) -> None:
        async with self._lock:
            existing = self._rows.get(user_address)
            if existing is not None:
                self._rows[user_address] = existing.model_copy(
                    update={"last_checked_at": checked_at, "updated_at": checked_at}
                )


class InMemoryOrderRepository(OrderRepository):
    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def save(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"order {order.id} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(self, order_filter: OrderFilter) -> list[Order]:
        matches = [
            o for o in self._orders.values()
            if (order_filter.user_address is None or o.user_address == order_filter.user_address)
            and (order_filter.status is None or o.status == order_filter.status)
        ]
        matches.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in matches[:order_filter.limit]]

    async def transition(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        now: datetime,
        receipt: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[Order]:
        check_transition(expected, new)
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status != expected:
                return None
            if new == OrderStatus.FILLED and current.is_past_expiry(now):
                return None
            updated = current.model_copy(
                update={
                    "status": new,
                    "receipt": receipt if receipt is not None else current.receipt,
                    "failure_reason": failure_reason,
                    "updated_at": now,
                }
            )
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def expire_stale(self, now: datetime) -> int:
        async with self._lock:
            stale = [
                o for o in self._orders.values()
                if o.status == OrderStatus.CREATED and o.is_past_expiry(now)
            ]
            for order in stale:
                self._orders[order.id] = order.model_copy(
                    update={"status": OrderStatus.EXPIRED, "updated_at": now}
                )
            return len(stale)
