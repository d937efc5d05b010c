"""
Error taxonomy for the zen mode engine.

Per-enrollment errors are contained by the scheduler; per-order errors are
returned to the caller of fulfill. Nothing here is retried in a tight loop.
"""
from enum import Enum
from typing import Optional


class ZenTraderError(Exception):
    """Base class for all engine errors."""


class TransientExternalError(ZenTraderError):
    """An external collaborator is temporarily unavailable or timed out."""

    def __init__(self, service: str, message: str = ""):
        self.service = service
        super().__init__(message or f"{service} temporarily unavailable")


class PermanentExternalError(ZenTraderError):
    """An external collaborator refused the request for a non-retryable reason."""

    def __init__(self, service: str, message: str = ""):
        self.service = service
        super().__init__(message or f"{service} request failed permanently")


class CircuitBreakerOpen(TransientExternalError):
    """Raised when circuit breaker is open and request is rejected."""

    def __init__(self, service: str, remaining_seconds: float):
        self.remaining_seconds = remaining_seconds
        super().__init__(
            service,
            f"Circuit breaker open for '{service}', retry in {remaining_seconds:.1f}s",
        )


class DataError(ZenTraderError):
    """Enrollment preferences are malformed."""


class InvalidStateError(ZenTraderError):
    """A precondition on an order was violated."""

    def __init__(self, order_id: str, message: str):
        self.order_id = order_id
        super().__init__(message)


class AlreadyResolvedError(InvalidStateError):
    """The order already left the created state."""


class OrderExpiredError(InvalidStateError):
    """The order is past its expiration."""


class OrderNotFoundError(ZenTraderError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class SigningFailed(ZenTraderError):
    """The order signer could not produce a signature."""


class SubmissionRejected(ZenTraderError):
    """The execution venue explicitly rejected the signed order."""


class BuildFailure(str, Enum):
    INVALID_PREFERENCES = "invalid_preferences"
    SIGNING_FAILED = "signing_failed"


class BuildError(ZenTraderError):
    """Order construction failed."""

    def __init__(self, reason: BuildFailure, message: str, cause: Optional[Exception] = None):
        self.reason = reason
        self.cause = cause
        super().__init__(f"{reason.value}: {message}")


class FatalConfigurationError(ZenTraderError):
    """Configuration is unusable; monitoring must not start."""
