"""
CSV-based activity journal for scheduler decisions and fulfillment attempts.
"""
import csv
import logging
from pathlib import Path
from typing import Optional

from .schemas import EnrollmentOutcome, FulfillmentResult, utc_now

logger = logging.getLogger(__name__)


class ActivityJournal:
    """Appends one row per enrollment outcome and per fulfillment attempt."""

    DECISIONS_HEADERS = ["ts", "user_address", "outcome", "order_id", "detail"]
    FULFILLMENTS_HEADERS = ["ts", "order_id", "status", "receipt", "replayed", "error"]

    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._ensure_headers()

    def _ensure_headers(self):
        """Ensure CSV files have headers."""
        files = [
            ("decisions.csv", self.DECISIONS_HEADERS),
            ("fulfillments.csv", self.FULFILLMENTS_HEADERS),
        ]
        for filename, headers in files:
            filepath = self.log_dir / filename
            if not filepath.exists():
                with open(filepath, "w", newline="") as f:
                    csv.writer(f).writerow(headers)

    def _append(self, filename: str, row: list) -> None:
        with open(self.log_dir / filename, "a", newline="") as f:
            csv.writer(f).writerow(row)

    def log_decision(
        self,
        user_address: str,
        outcome: EnrollmentOutcome,
        order_id: Optional[str] = None,
        detail: str = "",
    ) -> None:
        self._append("decisions.csv", [
            utc_now().isoformat(),
            user_address,
            outcome.value,
            order_id or "",
            detail,
        ])

    def log_fulfillment(self, result: FulfillmentResult) -> None:
        self._append("fulfillments.csv", [
            utc_now().isoformat(),
            result.order_id,
            result.status.value,
            result.receipt or "",
            result.replayed,
            result.error or "",
        ])

    def log_failed_attempt(self, order_id: str, error: Exception) -> None:
        """Record a fulfillment attempt that ended without a result."""
        self._append("fulfillments.csv", [
            utc_now().isoformat(),
            order_id,
            "error",
            "",
            False,
            f"{type(error).__name__}: {error}",
        ])

    def _read_recent(self, filename: str, limit: int) -> list[dict]:
        filepath = self.log_dir / filename
        if not filepath.exists():
            return []
        with open(filepath, "r", newline="") as f:
            rows = list(csv.DictReader(f))
        return rows[-limit:]

    def get_recent_decisions(self, limit: int = 20) -> list[dict]:
        return self._read_recent("decisions.csv", limit)

    def get_recent_fulfillments(self, limit: int = 20) -> list[dict]:
        return self._read_recent("fulfillments.csv", limit)
