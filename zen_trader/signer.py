"""
Order signers.

A signer binds the maker to a fully specified set of order terms. The engine
treats signing as an opaque capability; the HMAC signer below is the default
local implementation.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod

from .errors import FatalConfigurationError, SigningFailed
from .schemas import OrderTerms

logger = logging.getLogger(__name__)


class OrderSigner(ABC):
    name = "signer"

    @abstractmethod
    async def sign(self, terms: OrderTerms) -> str:
        """Return a signature over the terms or raise SigningFailed."""

    @abstractmethod
    def verify(self, terms: OrderTerms, signature: str) -> bool:
        ...


class HmacOrderSigner(OrderSigner):
    """HMAC-SHA256 over the canonical encoding of the order terms."""

    def __init__(self, secret: str, signer_address: str = ""):
        if not secret:
            raise FatalConfigurationError("HmacOrderSigner requires a non-empty secret")
        self._key = secret.encode("utf-8")
        self.signer_address = signer_address

    def _digest(self, terms: OrderTerms) -> str:
        return "0x" + hmac.new(self._key, terms.canonical_bytes(), hashlib.sha256).hexdigest()

    async def sign(self, terms: OrderTerms) -> str:
        try:
            signature = self._digest(terms)
        except (TypeError, ValueError) as e:
            raise SigningFailed(f"could not encode order terms: {e}") from e
        logger.debug(f"Signed terms for maker {terms.maker} nonce={terms.nonce}")
        return signature

    def verify(self, terms: OrderTerms, signature: str) -> bool:
        return hmac.compare_digest(self._digest(terms), signature)
