"""
SQLite storage backends for enrollments and orders.

Tables are created on first use. The immutable part of an order is kept as a
JSON document; status, receipt and failure reason live in their own columns
so transitions are single conditional UPDATE statements.
"""
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..schemas import Enrollment, Order, OrderFilter, OrderStatus
from .base import EnrollmentStore, OrderRepository, check_transition

logger = logging.getLogger(__name__)


class SQLiteDatabase:
    """Shared connection and schema for the SQLite stores."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._initialized = False

    def connection(self) -> sqlite3.Connection:
        """Get or create the database connection, creating tables if needed."""
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        if not self._initialized:
            self._initialize(self._conn)
        return self._conn

    def _initialize(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS enrollments (
                user_address TEXT PRIMARY KEY,
                preferences TEXT NOT NULL,
                is_active INTEGER NOT NULL,
                last_checked_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                user_address TEXT NOT NULL,
                status TEXT NOT NULL,
                expires_at_ts REAL NOT NULL,
                created_at_ts REAL NOT NULL,
                updated_at TEXT NOT NULL,
                receipt TEXT,
                failure_reason TEXT,
                document TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_enrollments_active ON enrollments(is_active)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_address)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status_expiry ON orders(status, expires_at_ts)")
        conn.commit()
        self._initialized = True
        logger.info(f"Zen trader store initialized at {self.db_path}")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._initialized = False


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteEnrollmentStore(EnrollmentStore):
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def _row_to_enrollment(self, row: sqlite3.Row) -> Enrollment:
        return Enrollment(
            user_address=row["user_address"],
            preferences=json.loads(row["preferences"]),
            is_active=bool(row["is_active"]),
            last_checked_at=_from_iso(row["last_checked_at"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    async def upsert(self, user_address: str, preferences: dict[str, Any], now: datetime) -> Enrollment:
        conn = self.db.connection()
        conn.execute("""
            INSERT INTO enrollments (user_address, preferences, is_active, last_checked_at, created_at, updated_at)
            VALUES (?, ?, 1, NULL, ?, ?)
            ON CONFLICT(user_address) DO UPDATE SET
                preferences = excluded.preferences,
                is_active = 1,
                updated_at = excluded.updated_at
        """, (user_address, json.dumps(preferences), now.isoformat(), now.isoformat()))
        conn.commit()
        return await self.get(user_address)

    async def deactivate(self, user_address: str, now: datetime) -> Optional[Enrollment]:
        conn = self.db.connection()
        conn.execute(
            "UPDATE enrollments SET is_active = 0, updated_at = ? WHERE user_address = ?",
            (now.isoformat(), user_address),
        )
        conn.commit()
        return await self.get(user_address)

    async def get(self, user_address: str) -> Optional[Enrollment]:
        row = self.db.connection().execute(
            "SELECT * FROM enrollments WHERE user_address = ?", (user_address,)
        ).fetchone()
        return self._row_to_enrollment(row) if row else None

    async def list_active(self) -> list[Enrollment]:
        rows = self.db.connection().execute(
            "SELECT * FROM enrollments WHERE is_active = 1 ORDER BY created_at"
        ).fetchall()
        return [self._row_to_enrollment(r) for r in rows]

    async def count_active(self) -> int:
        row = self.db.connection().execute(
            "SELECT COUNT(*) AS n FROM enrollments WHERE is_active = 1"
        ).fetchone()
        return int(row["n"])

    async def mark_checked(self, user_address: str, checked_at: datetime) -> None:
        conn = self.db.connection()
        conn.execute(
            "UPDATE enrollments SET last_checked_at = ?, updated_at = ? WHERE user_address = ?",
            (checked_at.isoformat(), checked_at.isoformat(), user_address),
        )
        conn.commit()


class SQLiteOrderRepository(OrderRepository):
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        document = json.loads(row["document"])
        document.update(
            status=row["status"],
            receipt=row["receipt"],
            failure_reason=row["failure_reason"],
            updated_at=row["updated_at"],
        )
        return Order.model_validate(document)

    async def save(self, order: Order) -> Order:
        conn = self.db.connection()
        try:
            conn.execute("""
                INSERT INTO orders (id, user_address, status, expires_at_ts, created_at_ts,
                                    updated_at, receipt, failure_reason, document)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order.id,
                order.user_address,
                order.status.value,
                order.expires_at.timestamp(),
                order.created_at.timestamp(),
                order.updated_at.isoformat(),
                order.receipt,
                order.failure_reason,
                order.model_dump_json(),
            ))
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValueError(f"order {order.id} already exists") from e
        conn.commit()
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        row = self.db.connection().execute(
            "SELECT * FROM orders WHERE id = ?", (order_id,)
        ).fetchone()
        return self._row_to_order(row) if row else None

    async def list_orders(self, order_filter: OrderFilter) -> list[Order]:
        clauses, params = [], []
        if order_filter.user_address is not None:
            clauses.append("user_address = ?")
            params.append(order_filter.user_address)
        if order_filter.status is not None:
            clauses.append("status = ?")
            params.append(order_filter.status.value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.connection().execute(
            f"SELECT * FROM orders {where} ORDER BY created_at_ts DESC LIMIT ?",
            (*params, order_filter.limit),
        ).fetchall()
        return [self._row_to_order(r) for r in rows]

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
        sql = """
            UPDATE orders
            SET status = ?, receipt = COALESCE(?, receipt), failure_reason = ?, updated_at = ?
            WHERE id = ? AND status = ?
        """
        params: list[Any] = [new.value, receipt, failure_reason, now.isoformat(), order_id, expected.value]
        if new == OrderStatus.FILLED:
            sql += " AND expires_at_ts >= ?"
            params.append(now.timestamp())

        conn = self.db.connection()
        cursor = conn.execute(sql, params)
        conn.commit()
        if cursor.rowcount != 1:
            return None
        return await self.get(order_id)

    async def expire_stale(self, now: datetime) -> int:
        conn = self.db.connection()
        cursor = conn.execute(
            "UPDATE orders SET status = ?, updated_at = ? WHERE status = ? AND expires_at_ts < ?",
            (OrderStatus.EXPIRED.value, now.isoformat(), OrderStatus.CREATED.value, now.timestamp()),
        )
        conn.commit()
        return cursor.rowcount
