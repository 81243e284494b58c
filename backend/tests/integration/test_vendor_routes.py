"""
Integration tests for the vendor receipt channel.
"""
import pytest

from src.models import Campaign, CampaignStatus, DeliveryStatus, Message


@pytest.fixture
def sent_messages(db_session, customer_factory, segment_factory, campaign_factory):
    """A sending campaign with two messages already accepted by the vendor."""
    campaign = campaign_factory(segment_factory({"field": "status", "operator": "equals", "value": "active"}))
    messages = []
    for _ in range(2):
        message = Message(
            campaign_id=campaign.id,
            customer_id=customer_factory().id,
            message_content="Hi",
            status=DeliveryStatus.SENT,
        )
        db_session.add(message)
        messages.append(message)
    db_session.commit()
    return campaign, messages


@pytest.mark.integration
def test_delivered_receipt_applied(client, sent_messages):
    campaign, (first, _) = sent_messages

    response = client.post(
        "/vendor/delivery-receipt",
        json={
            "message_id": first.id,
            "status": "delivered",
            "delivered_at": "2026-03-01T12:05:00Z",
            "vendor_message_id": "vendor_abc_1",
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message_id": first.id,
        "campaign_id": campaign.id,
        "status": "delivered",
        "applied": True,
        "duplicate": False,
        "campaign_finalized": False,
    }


@pytest.mark.integration
def test_last_receipt_finalizes_campaign(client, db_session, sent_messages):
    campaign, (first, second) = sent_messages
    client.post("/vendor/delivery-receipt", json={"message_id": first.id, "status": "delivered"})

    response = client.post(
        "/vendor/delivery-receipt",
        json={"message_id": second.id, "status": "failed", "failure_reason": "Handset unreachable"},
    )

    assert response.json()["campaign_finalized"] is True
    db_session.expire_all()
    assert db_session.get(Campaign, campaign.id).status == CampaignStatus.SENT
    assert db_session.get(Message, second.id).failure_reason == "Handset unreachable"


@pytest.mark.integration
def test_duplicate_receipt_acknowledged(client, sent_messages):
    _, (first, _) = sent_messages
    payload = {"message_id": first.id, "status": "bounced"}

    client.post("/vendor/delivery-receipt", json=payload)
    response = client.post("/vendor/delivery-receipt", json=payload)

    assert response.status_code == 200
    assert response.json()["applied"] is False
    assert response.json()["duplicate"] is True


@pytest.mark.integration
def test_conflicting_receipt_rejected(client, sent_messages):
    _, (first, _) = sent_messages
    client.post("/vendor/delivery-receipt", json={"message_id": first.id, "status": "delivered"})

    response = client.post("/vendor/delivery-receipt", json={"message_id": first.id, "status": "failed"})

    assert response.status_code == 409
    assert response.json()["details"]["current_status"] == "delivered"


@pytest.mark.integration
def test_receipt_for_unknown_message(client):
    response = client.post("/vendor/delivery-receipt", json={"message_id": 987, "status": "delivered"})

    assert response.status_code == 404


@pytest.mark.integration
@pytest.mark.parametrize("status", ["sent", "pending", "opened"])
def test_non_terminal_receipt_status_rejected(client, status):
    response = client.post("/vendor/delivery-receipt", json={"message_id": 1, "status": status})

    assert response.status_code == 422


@pytest.mark.integration
def test_vendor_status(client):
    data = client.get("/vendor/status").json()

    assert data["status"] == "operational"
    assert data["provider"] == "simulated"
    assert data["uptime_seconds"] >= 0
