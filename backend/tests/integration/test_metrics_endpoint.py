"""
Integration tests for /metrics endpoint and metrics collection.
"""
import pytest
from httpx import AsyncClient, ASGITransport

from src.api.app import app
from src.lib.metrics import get_metrics_collector


@pytest.mark.integration
@pytest.mark.asyncio
async def test_metrics_endpoint_returns_prometheus_format():
    """Test /metrics endpoint returns Prometheus text format."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"] == "text/plain; version=0.0.4; charset=utf-8"
    assert response.text == ""


@pytest.mark.integration
@pytest.mark.asyncio
async def test_metrics_endpoint_exports_after_activity():
    """Test /metrics endpoint exports counters after activity."""
    metrics = get_metrics_collector()
    metrics.increment_sends("simulated", "sent", amount=5)
    metrics.increment_receipts("delivered", "duplicate", amount=3)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/metrics")

    assert 'campaign_messages_sent_total{provider="simulated",status="sent"} 5' in response.text
    assert 'campaign_receipts_total{outcome="delivered",result="duplicate"} 3' in response.text


@pytest.mark.integration
def test_metrics_reflect_receipts(client, db_session, customer_factory, segment_factory, campaign_factory):
    """Receipts posted to the vendor channel show up in the receipt counters."""
    from src.models import DeliveryStatus, Message

    campaign = campaign_factory(segment_factory({"field": "total_orders", "operator": "equals", "value": 0}))
    message = Message(
        campaign_id=campaign.id,
        customer_id=customer_factory().id,
        message_content="Hi",
        status=DeliveryStatus.SENT,
    )
    db_session.add(message)
    db_session.commit()

    for _ in range(2):
        client.post("/vendor/delivery-receipt", json={"message_id": message.id, "status": "delivered"})
    output = client.get("/metrics").text

    assert 'campaign_receipts_total{outcome="delivered",result="applied"} 1' in output
    assert 'campaign_receipts_total{outcome="delivered",result="duplicate"} 1' in output
    assert 'campaigns_total{event="completed"} 1' in output
