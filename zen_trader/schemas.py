"""
Pydantic schemas for enrollments, market data and orders.

Financial quantities (amounts, balances) are integers in the asset's smallest
unit. Prices are informational only and never feed an on-chain amount.
"""
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import DataError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class ZenPreferences(BaseModel):
    """Validated view over an enrollment's preferences payload."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    maker_token: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("maker_token", "makerToken", "token"),
        description="Token the maker gives up",
    )
    taker_token: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("taker_token", "takerToken"),
        description="Token the maker receives",
    )
    amount: int = Field(..., gt=0, description="Making amount in smallest units")
    min_balance: Optional[int] = Field(default=None, ge=0, description="Hold below this maker balance")
    min_price: Optional[float] = Field(default=None, gt=0)
    max_price: Optional[float] = Field(default=None, gt=0)
    strategy: str = "zen_mode"

    @field_validator("amount", "min_balance", mode="before")
    @classmethod
    def reject_booleans(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("must be an integer amount, not a boolean")
        return v

    @field_validator("maker_token", "taker_token")
    @classmethod
    def strip_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("token identifier must not be blank")
        return v


def parse_preferences(raw: Any) -> ZenPreferences:
    """Validate a raw preferences payload, raising DataError when malformed."""
    if not isinstance(raw, dict):
        raise DataError(f"preferences must be an object, got {type(raw).__name__}")
    try:
        return ZenPreferences.model_validate(raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
        raise DataError(f"invalid preferences ({fields}): {e.error_count()} error(s)") from e


class Enrollment(BaseModel):
    """A user's participation in zen mode."""
    user_address: str = Field(..., min_length=1)
    preferences: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_checked_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def parse_preferences(self) -> ZenPreferences:
        return parse_preferences(self.preferences)


class MarketSnapshot(BaseModel):
    prices: dict[str, float] = Field(default_factory=dict)
    volume: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)


class BalanceSnapshot(BaseModel):
    token: str
    amount: int = Field(ge=0)
    decimals: int = Field(default=18, ge=0)


class OrderTerms(BaseModel):
    """The fully specified terms a signature binds the maker to."""

    model_config = ConfigDict(frozen=True)

    maker: str
    maker_asset: str
    taker_asset: str
    making_amount: int = Field(gt=0)
    taking_amount: int = Field(gt=0)
    expiration: int = Field(description="Unix timestamp (seconds)")
    nonce: int = Field(ge=0)
    chain_id: int

    def canonical_bytes(self) -> bytes:
        return json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")


class SignedOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    terms: OrderTerms
    signature: str


class OrderStatus(str, Enum):
    CREATED = "created"
    FILLED = "filled"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.CREATED


class Order(BaseModel):
    """A persisted signed order and its fulfillment state."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_address: str
    maker_asset: str
    taker_asset: str
    making_amount: int = Field(gt=0)
    taking_amount: int = Field(gt=0)
    signed_payload: SignedOrder
    status: OrderStatus = OrderStatus.CREATED
    expires_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    receipt: Optional[str] = Field(default=None, description="Execution receipt reference")
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_past_expiry(self, now: datetime) -> bool:
        return now > self.expires_at

    def effective_status(self, now: datetime) -> OrderStatus:
        """Status for decision purposes: a created order past expiry reads as expired."""
        if self.status == OrderStatus.CREATED and self.is_past_expiry(now):
            return OrderStatus.EXPIRED
        return self.status


class OrderFilter(BaseModel):
    user_address: Optional[str] = None
    status: Optional[OrderStatus] = None
    limit: int = Field(default=100, ge=1, le=1000)


class FulfillmentResult(BaseModel):
    order_id: str
    status: OrderStatus
    receipt: Optional[str] = None
    error: Optional[str] = None
    replayed: bool = Field(default=False, description="True when a prior result was returned")


class ActivationResult(BaseModel):
    success: bool = True
    user_address: str
    zen_mode_active: bool
    scheduler_state: SchedulerState


class EnrollmentOutcome(str, Enum):
    ORDER_CREATED = "order_created"
    HELD = "held"
    NOT_EVALUABLE = "not_evaluable"
    SKIPPED = "skipped"
    FAILED = "failed"


class TickReport(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: dict[str, EnrollmentOutcome] = Field(default_factory=dict)
    orders_created: list[str] = Field(default_factory=list)
    orders_expired: int = 0

    def count(self, outcome: EnrollmentOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)
