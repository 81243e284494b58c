"""
Unit tests for delivery providers.

Tests validate:
- Simulated vendor acceptance, rejection reasons and delayed receipts
- HTTP vendor request shape, answer mapping and retry behaviour
"""
import json
import random
from unittest.mock import patch

import httpx
import pytest
from tenacity import wait_none

from src.lib.settings import settings
from src.models import DeliveryStatus
from src.services.delivery_provider import (
    SIMULATED_FAILURE_REASONS,
    HttpDeliveryProvider,
    ProviderError,
    SimulatedDeliveryProvider,
    create_delivery_provider,
)


# ============================================================================
# Simulated vendor
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_accepts_with_vendor_id():
    provider = SimulatedDeliveryProvider(success_rate=1.0)

    result = await provider.send(1, 42, "Hi")

    assert result.accepted is True
    assert result.vendor_message_id.startswith("vendor_")
    assert result.vendor_message_id.endswith("_42")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_rejects_with_catalogue_reason():
    provider = SimulatedDeliveryProvider(success_rate=0.0, rng=random.Random(3))

    result = await provider.send(1, 42, "Hi")

    assert result.accepted is False
    assert result.reason in SIMULATED_FAILURE_REASONS
    assert result.vendor_message_id is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_success_rate_is_reproducible():
    outcomes = []
    for _ in range(2):
        provider = SimulatedDeliveryProvider(success_rate=0.6, rng=random.Random(11))
        outcomes.append([(await provider.send(i, i, "x")).accepted for i in range(20)])

    assert outcomes[0] == outcomes[1]
    assert 0 < sum(outcomes[0]) < 20


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_emits_delivered_receipt():
    receipts = []

    async def sink(receipt):
        receipts.append(receipt)

    provider = SimulatedDeliveryProvider(success_rate=1.0, receipt_delay_seconds=0, receipt_sink=sink)
    result = await provider.send(7, 3, "Hi")
    await provider.drain()

    assert len(receipts) == 1
    assert receipts[0].message_id == 7
    assert receipts[0].outcome == DeliveryStatus.DELIVERED
    assert receipts[0].vendor_message_id == result.vendor_message_id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_rejected_send_has_no_receipt():
    receipts = []

    async def sink(receipt):
        receipts.append(receipt)

    provider = SimulatedDeliveryProvider(success_rate=0.0, receipt_delay_seconds=0, receipt_sink=sink)
    await provider.send(7, 3, "Hi")
    await provider.drain()

    assert receipts == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_sink_errors_are_contained():
    async def sink(receipt):
        raise RuntimeError("store down")

    provider = SimulatedDeliveryProvider(success_rate=1.0, receipt_delay_seconds=0, receipt_sink=sink)
    await provider.send(7, 3, "Hi")

    await provider.drain()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_simulated_aclose_cancels_pending_receipts():
    receipts = []

    async def sink(receipt):
        receipts.append(receipt)

    provider = SimulatedDeliveryProvider(success_rate=1.0, receipt_delay_seconds=60, receipt_sink=sink)
    await provider.send(7, 3, "Hi")
    await provider.aclose()

    assert receipts == []


# ============================================================================
# HTTP vendor
# ============================================================================


def http_provider(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpDeliveryProvider(
        base_url="http://vendor.test/api/vendor/",
        callback_url="http://crm.test/vendor/delivery-receipt",
        client=client,
    )


@pytest.fixture
def no_retry_wait():
    with patch.object(HttpDeliveryProvider._post_send.retry, "wait", wait_none()):
        yield


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_send_posts_payload_and_accepts():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"success": True, "vendor_message_id": "v-123"})

    provider = http_provider(handler)
    result = await provider.send(5, 9, "Hello Ana")
    await provider.aclose()

    assert result.accepted is True
    assert result.vendor_message_id == "v-123"
    assert str(requests[0].url) == "http://vendor.test/api/vendor/send"
    assert json.loads(requests[0].content) == {
        "message_id": 5,
        "customer_id": 9,
        "message_content": "Hello Ana",
        "callback_url": "http://crm.test/vendor/delivery-receipt",
    }


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_unsuccessful_answer_is_rejection():
    provider = http_provider(
        lambda request: httpx.Response(200, json={"success": False, "failure_reason": "Customer opted out"})
    )

    result = await provider.send(5, 9, "Hi")

    assert result.accepted is False
    assert result.reason == "Customer opted out"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_client_error_is_rejection():
    provider = http_provider(lambda request: httpx.Response(422, json={"error": "Invalid message format"}))

    result = await provider.send(5, 9, "Hi")

    assert result.accepted is False
    assert result.reason == "Invalid message format"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_client_error_without_body():
    provider = http_provider(lambda request: httpx.Response(404, text="not here"))

    result = await provider.send(5, 9, "Hi")

    assert result.reason == "Vendor returned 404"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_server_error_retried_then_accepted(no_retry_wait):
    answers = iter([
        httpx.Response(503),
        httpx.Response(200, json={"success": True, "vendor_message_id": "v-9"}),
    ])
    provider = http_provider(lambda request: next(answers))

    result = await provider.send(5, 9, "Hi")

    assert result.accepted is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_unreachable_vendor_raises(no_retry_wait):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    provider = http_provider(handler)

    with pytest.raises(ProviderError):
        await provider.send(5, 9, "Hi")
    assert len(calls) == 3


# ============================================================================
# Factory
# ============================================================================


@pytest.mark.unit
def test_factory_defaults_to_simulated():
    async def sink(receipt):
        pass

    provider = create_delivery_provider(receipt_sink=sink)

    assert isinstance(provider, SimulatedDeliveryProvider)
    assert provider.receipt_sink is sink


@pytest.mark.unit
@pytest.mark.asyncio
async def test_factory_builds_http_provider():
    with patch.object(settings, "delivery_provider", "http"):
        provider = create_delivery_provider()

    assert isinstance(provider, HttpDeliveryProvider)
    assert provider.name == "http"
    await provider.aclose()
