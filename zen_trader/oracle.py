"""
Market and balance oracles.

The scheduler only sees the MarketOracle interface. Failures are reported as
TransientExternalError (retry next tick) or PermanentExternalError.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .errors import PermanentExternalError, TransientExternalError
from .resilience import RetryableHTTPCodes
from .schemas import BalanceSnapshot, MarketSnapshot, utc_now

logger = logging.getLogger(__name__)


class MarketOracle(ABC):
    """Supplies current prices and holdings."""

    name = "oracle"

    @abstractmethod
    async def get_market_snapshot(self) -> MarketSnapshot:
        ...

    @abstractmethod
    async def get_balance(self, address: str, token: str) -> BalanceSnapshot:
        ...


class StaticMarketOracle(MarketOracle):
    """Oracle backed by fixed prices and balances, for paper runs and tests."""

    def __init__(
        self,
        prices: Optional[dict[str, float]] = None,
        volume: float = 1_000_000.0,
        balances: Optional[dict[tuple[str, str], int]] = None,
        default_balance: int = 10**24,
        decimals: int = 18,
    ):
        self.prices = dict(prices or {"ETH": 2000.0, "USDC": 1.0})
        self.volume = volume
        self.balances = dict(balances or {})
        self.default_balance = default_balance
        self.decimals = decimals

    def set_balance(self, address: str, token: str, amount: int) -> None:
        self.balances[(address.lower(), token)] = amount

    async def get_market_snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(prices=dict(self.prices), volume=self.volume, timestamp=utc_now())

    async def get_balance(self, address: str, token: str) -> BalanceSnapshot:
        amount = self.balances.get((address.lower(), token), self.default_balance)
        return BalanceSnapshot(token=token, amount=amount, decimals=self.decimals)


class HttpMarketOracle(MarketOracle):
    """
    Async HTTP client for a market/balance service.

    Endpoints:
        GET {base_url}/market                     -> {prices, volume, timestamp}
        GET {base_url}/balances/{address}/{token} -> {amount, decimals}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_json(self, path: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}{path}", headers=self._get_headers())
        except httpx.TransportError as e:
            raise TransientExternalError(self.name, f"oracle unreachable: {e}") from e

        if RetryableHTTPCodes.is_retryable(response.status_code):
            raise TransientExternalError(self.name, f"oracle returned HTTP {response.status_code}")
        if response.is_error:
            raise PermanentExternalError(self.name, f"oracle returned HTTP {response.status_code} for {path}")
        try:
            return response.json()
        except ValueError as e:
            raise PermanentExternalError(self.name, f"oracle returned invalid JSON for {path}") from e

    async def get_market_snapshot(self) -> MarketSnapshot:
        data = await self._get_json("/market")
        try:
            return MarketSnapshot.model_validate(data)
        except ValidationError as e:
            raise PermanentExternalError(self.name, f"malformed market snapshot: {e.error_count()} error(s)") from e

    async def get_balance(self, address: str, token: str) -> BalanceSnapshot:
        data = await self._get_json(f"/balances/{address}/{token}")
        try:
            return BalanceSnapshot(
                token=token,
                amount=int(data["amount"]),
                decimals=int(data.get("decimals", 18)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentExternalError(self.name, f"malformed balance for {address}/{token}") from e
