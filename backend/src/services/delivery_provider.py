"""
Delivery provider abstraction for campaign messages.

A provider answers each send immediately (accepted or rejected); accepted
messages later get an out-of-band delivery receipt through the receipt
channel. Two implementations:
- SimulatedDeliveryProvider: in-process vendor with a configurable success
  rate and delayed receipts (development / tests)
- HttpDeliveryProvider: vendor messaging API over HTTP
"""
import asyncio
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.lib.logging import get_logger
from src.lib.settings import settings
from src.models.messages import DeliveryStatus

logger = get_logger(__name__)


# Failure catalogue reported by the simulated vendor
SIMULATED_FAILURE_REASONS = (
    "Invalid phone number",
    "Customer opted out",
    "Network timeout",
    "Rate limit exceeded",
    "Invalid message format",
)


class ProviderError(Exception):
    """The provider could not be reached or answered with a server error."""


class _RetryableVendorError(ProviderError):
    """Vendor answered 5xx; worth another attempt."""


@dataclass(frozen=True)
class ProviderResult:
    """Immediate answer for one send."""
    accepted: bool
    vendor_message_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class DeliveryReceipt:
    """Out-of-band delivery outcome for one message."""
    message_id: int
    outcome: DeliveryStatus
    occurred_at: datetime
    vendor_message_id: Optional[str] = None
    failure_reason: Optional[str] = None


ReceiptSink = Callable[[DeliveryReceipt], Awaitable[None]]


class DeliveryProvider(ABC):
    """
    Abstract base class for message delivery providers.
    """

    name: str = "provider"

    @abstractmethod
    async def send(self, message_id: int, customer_id: int, content: str) -> ProviderResult:
        """
        Submit one message.

        Args:
            message_id: Communication log id, echoed back in receipts
            customer_id: Recipient customer id
            content: Personalized message text

        Returns:
            ProviderResult with the provider's immediate answer

        Raises:
            ProviderError: provider unreachable or failing
        """

    async def aclose(self) -> None:
        """Release provider resources."""


class SimulatedDeliveryProvider(DeliveryProvider):
    """
    In-process vendor simulation.

    Accepts `success_rate` of sends; rejected sends carry a reason from the
    failure catalogue. When a receipt sink is attached, every accepted send
    is followed by a `delivered` receipt after `receipt_delay_seconds`.
    """

    name = "simulated"

    def __init__(
        self,
        success_rate: Optional[float] = None,
        receipt_delay_seconds: Optional[float] = None,
        receipt_sink: Optional[ReceiptSink] = None,
        rng: Optional[random.Random] = None,
    ):
        self.success_rate = settings.simulated_success_rate if success_rate is None else success_rate
        self.receipt_delay_seconds = (
            settings.simulated_receipt_delay_seconds
            if receipt_delay_seconds is None
            else receipt_delay_seconds
        )
        self.receipt_sink = receipt_sink
        self.rng = rng or random.Random()
        self._pending_receipts: Set[asyncio.Task] = set()

    async def send(self, message_id: int, customer_id: int, content: str) -> ProviderResult:
        if self.rng.random() >= self.success_rate:
            reason = self.rng.choice(SIMULATED_FAILURE_REASONS)
            logger.info(
                f"Simulated vendor rejected message {message_id}: {reason}",
                extra={"message_id": message_id, "customer_id": customer_id},
            )
            return ProviderResult(accepted=False, reason=reason)

        vendor_message_id = f"vendor_{uuid.uuid4().hex[:16]}_{customer_id}"
        if self.receipt_sink is not None:
            task = asyncio.create_task(self._emit_receipt(message_id, vendor_message_id))
            self._pending_receipts.add(task)
            task.add_done_callback(self._pending_receipts.discard)

        return ProviderResult(accepted=True, vendor_message_id=vendor_message_id)

    async def _emit_receipt(self, message_id: int, vendor_message_id: str) -> None:
        await asyncio.sleep(self.receipt_delay_seconds)
        receipt = DeliveryReceipt(
            message_id=message_id,
            outcome=DeliveryStatus.DELIVERED,
            occurred_at=datetime.now(timezone.utc),
            vendor_message_id=vendor_message_id,
        )
        try:
            await self.receipt_sink(receipt)
        except Exception as e:
            logger.error(
                f"Failed to deliver simulated receipt for message {message_id}: {e}",
                extra={"message_id": message_id},
            )

    async def drain(self) -> None:
        """Wait until every scheduled receipt has been emitted."""
        while self._pending_receipts:
            await asyncio.gather(*list(self._pending_receipts), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._pending_receipts):
            task.cancel()
        await asyncio.gather(*list(self._pending_receipts), return_exceptions=True)


class HttpDeliveryProvider(DeliveryProvider):
    """
    Vendor messaging API client.

    POSTs `{message_id, customer_id, message_content, callback_url}` to
    `{vendor_api_url}/send`. 2xx with `success` is accepted, 4xx is a
    rejection carrying the vendor's `failure_reason`. Transport errors and
    5xx answers are retried, then surface as ProviderError.
    """

    name = "http"

    def __init__(
        self,
        base_url: Optional[str] = None,
        callback_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.vendor_api_url).rstrip("/")
        self.callback_url = callback_url or settings.vendor_callback_url
        self.client = client or httpx.AsyncClient(
            timeout=timeout or settings.vendor_timeout_seconds,
            headers={"User-Agent": f"{settings.app_name}/1.0"},
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TransportError, _RetryableVendorError)),
        reraise=True,
    )
    async def _post_send(self, payload: dict) -> httpx.Response:
        response = await self.client.post(f"{self.base_url}/send", json=payload)
        if response.status_code >= 500:
            raise _RetryableVendorError(f"Vendor returned {response.status_code}")
        return response

    async def send(self, message_id: int, customer_id: int, content: str) -> ProviderResult:
        payload = {
            "message_id": message_id,
            "customer_id": customer_id,
            "message_content": content,
            "callback_url": self.callback_url,
        }

        try:
            response = await self._post_send(payload)
        except ProviderError:
            raise
        except httpx.HTTPError as e:
            raise ProviderError(f"Vendor request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_success and body.get("success", True):
            return ProviderResult(accepted=True, vendor_message_id=body.get("vendor_message_id"))

        reason = body.get("failure_reason") or body.get("error") or f"Vendor returned {response.status_code}"
        return ProviderResult(accepted=False, reason=reason)

    async def aclose(self) -> None:
        await self.client.aclose()


def create_delivery_provider(receipt_sink: Optional[ReceiptSink] = None) -> DeliveryProvider:
    """
    Build the provider selected by settings.delivery_provider.

    The receipt sink is only used by the simulated provider; the HTTP vendor
    posts receipts to the callback URL instead.
    """
    if settings.delivery_provider == "http":
        return HttpDeliveryProvider()
    return SimulatedDeliveryProvider(receipt_sink=receipt_sink)
