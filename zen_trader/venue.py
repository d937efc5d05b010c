"""
On-chain execution venues used by the taker side.

submit() returns an execution receipt reference, raises SubmissionRejected on
explicit rejection and TransientExternalError when the venue is unreachable.
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx

from .errors import SubmissionRejected, TransientExternalError
from .resilience import RetryableHTTPCodes
from .schemas import SignedOrder, utc_now
from .signer import OrderSigner

logger = logging.getLogger(__name__)


class ExecutionVenue(ABC):
    name = "venue"

    @abstractmethod
    async def submit(self, signed: SignedOrder) -> str:
        ...


class PaperExecutionVenue(ExecutionVenue):
    """
    Simulated venue: checks the signature and expiration, then issues a
    deterministic receipt. Keeps every accepted submission for inspection.
    """

    def __init__(self, signer: OrderSigner, clock: Callable = utc_now):
        self.signer = signer
        self.clock = clock
        self.submissions: list[SignedOrder] = []

    async def submit(self, signed: SignedOrder) -> str:
        terms = signed.terms
        if not self.signer.verify(terms, signed.signature):
            raise SubmissionRejected("signature does not match order terms")
        if self.clock().timestamp() > terms.expiration:
            raise SubmissionRejected("order expired on submission")

        self.submissions.append(signed)
        digest = hashlib.sha256(terms.canonical_bytes() + signed.signature.encode("utf-8")).hexdigest()
        receipt = "0x" + digest
        logger.info(f"PAPER FILL: {terms.making_amount} {terms.maker_asset} -> {terms.taking_amount} {terms.taker_asset} ({receipt[:12]})")
        return receipt


class HttpExecutionVenue(ExecutionVenue):
    """
    Async HTTP client for a relayer that submits fills on-chain.

    POST {base_url}/fills with {"terms": ..., "signature": ...}
    -> {"receipt": "<tx reference>"}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def submit(self, signed: SignedOrder) -> str:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/fills",
                    headers=self._get_headers(),
                    json=signed.model_dump(mode="json"),
                )
        except httpx.TransportError as e:
            raise TransientExternalError(self.name, f"venue unreachable: {e}") from e

        if RetryableHTTPCodes.is_retryable(response.status_code):
            raise TransientExternalError(self.name, f"venue returned HTTP {response.status_code}")
        if response.is_error:
            raise SubmissionRejected(self._rejection_reason(response))

        try:
            receipt = response.json()["receipt"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransientExternalError(self.name, "venue response carried no receipt") from e
        return str(receipt)

    @staticmethod
    def _rejection_reason(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        if isinstance(body, dict):
            return str(body.get("reason") or body.get("error") or body)
        return str(body)
