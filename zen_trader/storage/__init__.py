"""
Enrollment and order storage backends.
"""
from .base import EnrollmentStore, OrderRepository
from .memory import InMemoryEnrollmentStore, InMemoryOrderRepository
from .sqlite import SQLiteDatabase, SQLiteEnrollmentStore, SQLiteOrderRepository

__all__ = [
    "EnrollmentStore",
    "OrderRepository",
    "InMemoryEnrollmentStore",
    "InMemoryOrderRepository",
    "SQLiteDatabase",
    "SQLiteEnrollmentStore",
    "SQLiteOrderRepository",
]
