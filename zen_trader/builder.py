"""
Order builder - turns an enrollment plus a market/balance snapshot into a
signed limit order.

Amounts are integers in smallest units end to end. The taking amount is a
deterministic integer function of the making amount, so it can always be
recomputed from persisted inputs. The stored expiry is exactly the signed
expiration, rounded up to a whole second.
"""
import logging
import math
import secrets
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import BuildError, BuildFailure, DataError, PermanentExternalError, SigningFailed
from .resilience import CircuitBreaker, call_external
from .schemas import (
    BalanceSnapshot,
    Enrollment,
    MarketSnapshot,
    Order,
    OrderStatus,
    OrderTerms,
    SignedOrder,
    ZenPreferences,
)
from .signer import OrderSigner

logger = logging.getLogger(__name__)

NONCE_BITS = 40


class PricingRule(ABC):
    """Derives the taking amount for a given making amount."""

    @abstractmethod
    def taking_amount(self, making_amount: int) -> int:
        ...


class FixedSpreadPricing(PricingRule):
    """takingAmount = makingAmount * numerator // denominator (floor)."""

    def __init__(self, numerator: int = 100, denominator: int = 99):
        if numerator <= 0 or denominator <= 0:
            raise ValueError("spread numerator and denominator must be positive")
        self.numerator = numerator
        self.denominator = denominator

    def taking_amount(self, making_amount: int) -> int:
        return making_amount * self.numerator // self.denominator


class OrderBuilder:
    """Builds and signs orders on behalf of enrolled makers."""

    def __init__(
        self,
        signer: OrderSigner,
        pricing: PricingRule,
        chain_id: int,
        ttl_seconds: int = 86_400,
        signer_timeout: float = 5.0,
        signer_breaker: Optional[CircuitBreaker] = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("order ttl must be positive")
        self.signer = signer
        self.pricing = pricing
        self.chain_id = chain_id
        self.ttl = timedelta(seconds=ttl_seconds)
        self.signer_timeout = signer_timeout
        self.signer_breaker = signer_breaker
        self._issued_nonces: dict[str, deque] = {}

    def _fresh_nonce(self, maker: str) -> int:
        issued = self._issued_nonces.setdefault(maker, deque(maxlen=256))
        while True:
            nonce = secrets.randbits(NONCE_BITS)
            if nonce not in issued:
                issued.append(nonce)
                return nonce

    def terms_for(self, enrollment: Enrollment, prefs: ZenPreferences, now: datetime) -> OrderTerms:
        making_amount = prefs.amount
        taking_amount = self.pricing.taking_amount(making_amount)
        if taking_amount <= 0:
            raise BuildError(
                BuildFailure.INVALID_PREFERENCES,
                f"amount {making_amount} is too small to price",
            )
        return OrderTerms(
            maker=enrollment.user_address,
            maker_asset=prefs.maker_token,
            taker_asset=prefs.taker_token,
            making_amount=making_amount,
            taking_amount=taking_amount,
            expiration=math.ceil((now + self.ttl).timestamp()),
            nonce=self._fresh_nonce(enrollment.user_address),
            chain_id=self.chain_id,
        )

    async def build(
        self,
        enrollment: Enrollment,
        market: MarketSnapshot,
        balance: BalanceSnapshot,
        now: datetime,
    ) -> Order:
        """
        Build a signed order for the enrollment.

        Raises:
            BuildError: INVALID_PREFERENCES or SIGNING_FAILED
            TransientExternalError: the signer timed out or its circuit is open
        """
        try:
            prefs = enrollment.parse_preferences()
        except DataError as e:
            raise BuildError(BuildFailure.INVALID_PREFERENCES, str(e), cause=e) from e

        terms = self.terms_for(enrollment, prefs, now)

        try:
            signature = await call_external(
                self.signer.name,
                lambda: self.signer.sign(terms),
                timeout=self.signer_timeout,
                breaker=self.signer_breaker,
            )
        except (SigningFailed, PermanentExternalError) as e:
            raise BuildError(BuildFailure.SIGNING_FAILED, str(e), cause=e) from e

        order = Order(
            user_address=enrollment.user_address,
            maker_asset=terms.maker_asset,
            taker_asset=terms.taker_asset,
            making_amount=terms.making_amount,
            taking_amount=terms.taking_amount,
            signed_payload=SignedOrder(terms=terms, signature=signature),
            status=OrderStatus.CREATED,
            expires_at=datetime.fromtimestamp(terms.expiration, timezone.utc),
            created_at=now,
            updated_at=now,
            metadata={
                "strategy": prefs.strategy,
                "calculated_at": now.isoformat(),
                "market_price": market.prices.get(prefs.maker_token),
                "maker_balance": balance.amount,
            },
        )
        logger.info(
            f"ORDER BUILT: {enrollment.user_address} {order.making_amount} {order.maker_asset} "
            f"-> {order.taking_amount} {order.taker_asset} (nonce {terms.nonce})"
        )
        return order
