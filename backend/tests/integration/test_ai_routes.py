"""
Integration tests for AI assistant routes with a mocked assistant.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.ai.rule_assistant import GeneratedRules, MessageSuggestion
from src.api.dependencies import get_assistant
from src.api.middleware.error_handler import ServiceUnavailableException
from src.models import CampaignStatus, DeliveryStatus, Message


@pytest.fixture
def assistant(api_app):
    mock_assistant = MagicMock()
    api_app.dependency_overrides[get_assistant] = lambda: mock_assistant
    return mock_assistant


@pytest.mark.integration
def test_segment_rules_include_audience_size(client, assistant, spending_customers):
    assistant.generate_rules = AsyncMock(return_value=GeneratedRules(
        prompt="churned big spenders",
        rules={
            "operator": "AND",
            "conditions": [
                {"field": "status", "operator": "equals", "value": "churned"},
                {"field": "total_spent", "operator": "greater_than", "value": 10000},
            ],
        },
    ))

    response = client.post("/ai/segment-rules", json={"prompt": "churned big spenders"})

    assert response.status_code == 200
    data = response.json()
    assert data["audience_size"] == 1
    assert data["rules"]["operator"] == "AND"
    assert data["warnings"] == []
    assistant.generate_rules.assert_awaited_once_with("churned big spenders")


@pytest.mark.integration
def test_segment_rules_require_prompt(client, assistant):
    assert client.post("/ai/segment-rules", json={"prompt": ""}).status_code == 422


@pytest.mark.integration
def test_segment_rules_when_ai_unavailable(client, assistant):
    assistant.generate_rules = AsyncMock(side_effect=ServiceUnavailableException("AI service is not configured"))

    response = client.post("/ai/segment-rules", json={"prompt": "everyone"})

    assert response.status_code == 503
    assert response.json()["error"] == "AI service is not configured"


@pytest.mark.integration
def test_message_suggestions(client, assistant):
    assistant.suggest_messages = AsyncMock(return_value=[
        MessageSuggestion(title="Miss you", template="Hi {name}, come back!", reasoning="Warm"),
    ])

    response = client.post(
        "/ai/message-suggestions",
        json={"campaign_objective": "Win back", "segment_description": "Lapsed", "tone": "warm"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "suggestions": [{"title": "Miss you", "template": "Hi {name}, come back!", "reasoning": "Warm"}]
    }
    assistant.suggest_messages.assert_awaited_once_with("Win back", segment_description="Lapsed", tone="warm")


@pytest.mark.integration
def test_performance_summary(client, assistant, db_session, customer_factory, segment_factory, campaign_factory):
    segment = segment_factory({"field": "status", "operator": "equals", "value": "active"})
    campaign = campaign_factory(segment, status=CampaignStatus.SENT)
    for status in (DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED):
        db_session.add(Message(
            campaign_id=campaign.id,
            customer_id=customer_factory().id,
            message_content="Hi",
            status=status,
        ))
    db_session.commit()
    assistant.summarize_performance = AsyncMock(return_value="Two of three delivered.")

    response = client.post("/ai/performance-summary", json={"campaign_id": campaign.id})

    assert response.status_code == 200
    assert response.json() == {
        "campaign_id": campaign.id,
        "summary": "Two of three delivered.",
        "stats": {
            "total_messages": 3,
            "sent_messages": 2,
            "delivered_messages": 2,
            "failed_messages": 1,
            "pending_messages": 0,
            "delivery_rate": 66.67,
        },
    }
    summarized, stats = assistant.summarize_performance.await_args.args
    assert summarized.id == campaign.id
    assert stats.total_messages == 3


@pytest.mark.integration
def test_performance_summary_for_unknown_campaign(client, assistant):
    assistant.summarize_performance = AsyncMock()

    response = client.post("/ai/performance-summary", json={"campaign_id": 404})

    assert response.status_code == 404
    assistant.summarize_performance.assert_not_awaited()
