"""
Integration tests for campaign routes.

Campaign creation hands dispatch to a background task, so these tests talk
to the app through an in-loop AsyncClient and wait on the runner.
"""
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from src.api.dependencies import get_runner
from src.jobs.campaign_runner import DispatchRunner
from src.models import CampaignStatus, CustomerStatus, DeliveryStatus, Message
from src.services.delivery_provider import SimulatedDeliveryProvider


ACTIVE = {"field": "status", "operator": "equals", "value": "active"}


@pytest.fixture
def runner(api_app, session_factory):
    provider = SimulatedDeliveryProvider(success_rate=1.0, receipt_delay_seconds=0)
    dispatch_runner = DispatchRunner(session_factory=session_factory, provider=provider)
    provider.receipt_sink = dispatch_runner.apply_receipt
    api_app.dependency_overrides[get_runner] = lambda: dispatch_runner
    return dispatch_runner


def async_client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


# ============================================================================
# Create and dispatch
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_campaign_dispatches_to_audience(api_app, runner, customer_factory, segment_factory):
    for name in ("Ana", "Ben", "Cleo"):
        customer_factory(name=name)
    customer_factory(status=CustomerStatus.CHURNED)
    segment = segment_factory(ACTIVE)

    async with async_client(api_app) as client:
        response = await client.post(
            "/campaigns",
            json={"name": "Hello", "segment_id": segment.id, "message_template": "Hi {name}!"},
            headers={"X-Operator-Id": "ops@example.com"},
        )
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "sending"
        assert created["created_by"] == "ops@example.com"

        await runner.wait(created["id"])
        await runner.provider.drain()

        campaign = (await client.get(f"/campaigns/{created['id']}")).json()
        stats = (await client.get(f"/campaigns/{created['id']}/stats")).json()
        messages = (await client.get(f"/campaigns/{created['id']}/messages")).json()

    assert campaign["status"] == "sent"
    assert campaign["sent_at"] is not None
    assert campaign["total_messages"] == 3
    assert stats["delivered_messages"] == 3
    assert stats["pending_messages"] == 0
    assert stats["delivery_rate"] == 100.0
    assert sorted(m["message_content"] for m in messages["messages"]) == ["Hi Ana!", "Hi Ben!", "Hi Cleo!"]
    await runner.aclose()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_empty_audience_campaign_is_sent(api_app, runner, segment_factory):
    segment = segment_factory(ACTIVE)

    async with async_client(api_app) as client:
        created = (await client.post(
            "/campaigns",
            json={"name": "Nobody", "segment_id": segment.id, "message_template": "Hi"},
        )).json()
        await runner.wait(created["id"])
        campaign = (await client.get(f"/campaigns/{created['id']}")).json()

    assert campaign["status"] == "sent"
    assert campaign["total_messages"] == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_future_campaign_is_scheduled_not_dispatched(api_app, runner, customer_factory, segment_factory):
    customer_factory()
    segment = segment_factory(ACTIVE)
    when = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()

    async with async_client(api_app) as client:
        created = (await client.post(
            "/campaigns",
            json={"name": "Later", "segment_id": segment.id, "message_template": "Hi", "scheduled_at": when},
        )).json()

    assert created["status"] == "scheduled"
    assert not runner.is_running(created["id"])
    assert await runner.wait(created["id"]) is None


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_campaign_for_unknown_segment(api_app, runner):
    async with async_client(api_app) as client:
        response = await client.post(
            "/campaigns",
            json={"name": "X", "segment_id": 999, "message_template": "Hi"},
        )

    assert response.status_code == 404


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_campaign_requires_template(api_app, runner, segment_factory):
    segment = segment_factory(ACTIVE)

    async with async_client(api_app) as client:
        response = await client.post(
            "/campaigns",
            json={"name": "X", "segment_id": segment.id, "message_template": ""},
        )

    assert response.status_code == 422


# ============================================================================
# Reads and deletion
# ============================================================================


@pytest.mark.integration
def test_list_campaigns_filtered_by_status(client, segment_factory, campaign_factory):
    segment = segment_factory(ACTIVE)
    campaign_factory(segment, name="Done", status=CampaignStatus.SENT)
    campaign_factory(segment, name="Soon", status=CampaignStatus.SCHEDULED)

    response = client.get("/campaigns", params={"status": "scheduled"})

    assert response.status_code == 200
    assert [c["name"] for c in response.json()] == ["Soon"]


@pytest.mark.integration
def test_list_counts_delivered_as_sent(client, db_session, customer_factory, segment_factory, campaign_factory):
    campaign = campaign_factory(segment_factory(ACTIVE), status=CampaignStatus.SENT)
    for status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED):
        db_session.add(Message(
            campaign_id=campaign.id,
            customer_id=customer_factory().id,
            message_content="Hi",
            status=status,
        ))
    db_session.commit()

    (listed,) = client.get("/campaigns").json()
    stats = client.get(f"/campaigns/{campaign.id}/stats").json()
    schema = client.get("/openapi.json").json()["components"]["schemas"]

    assert (listed["sent_messages"], listed["failed_messages"]) == (2, 1)
    assert (stats["sent_messages"], stats["delivered_messages"]) == (1, 1)
    assert "sent plus delivered" in schema["CampaignResponse"]["properties"]["sent_messages"]["description"]


@pytest.mark.integration
def test_messages_filtered_by_status(client, segment_factory, campaign_factory):
    campaign = campaign_factory(segment_factory(ACTIVE), status=CampaignStatus.SENT)

    response = client.get(f"/campaigns/{campaign.id}/messages", params={"status": "failed"})

    assert response.status_code == 200
    assert response.json() == {"messages": [], "total": 0, "page": 1, "limit": 50, "pages": 0}


@pytest.mark.integration
def test_unknown_campaign_stats(client):
    assert client.get("/campaigns/404/stats").status_code == 404


@pytest.mark.integration
def test_delete_campaign(client, segment_factory, campaign_factory):
    campaign = campaign_factory(segment_factory(ACTIVE), status=CampaignStatus.SENT)

    assert client.delete(f"/campaigns/{campaign.id}").status_code == 204
    assert client.get(f"/campaigns/{campaign.id}").status_code == 404


@pytest.mark.integration
def test_delete_sending_campaign_conflicts(client, segment_factory, campaign_factory):
    campaign = campaign_factory(segment_factory(ACTIVE), status=CampaignStatus.SENDING)

    assert client.delete(f"/campaigns/{campaign.id}").status_code == 409
