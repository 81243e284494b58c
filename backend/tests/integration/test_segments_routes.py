"""
Integration tests for segment routes.
"""
import pytest

from src.models import CampaignStatus, CustomerStatus


ACTIVE_BIG_SPENDERS = {
    "operator": "AND",
    "conditions": [
        {"field": "status", "operator": "equals", "value": "active"},
        {"field": "total_spent", "operator": "greater_than", "value": 10000},
    ],
}


# ============================================================================
# Preview
# ============================================================================


@pytest.mark.integration
def test_preview_counts_and_samples(client, spending_customers):
    response = client.post("/segments/preview", json={"rules": ACTIVE_BIG_SPENDERS})

    assert response.status_code == 200
    data = response.json()
    assert data["match_count"] == 1
    assert [c["id"] for c in data["sample_customers"]] == [1]
    assert data["sample_customers"][0]["status"] == "active"
    assert data["warnings"] == []


@pytest.mark.integration
def test_preview_reports_ignored_conditions(client, spending_customers):
    rules = {
        "operator": "OR",
        "conditions": [
            {"field": "status", "operator": "equals", "value": "churned"},
            {"field": "loyalty_tier", "operator": "equals", "value": "gold"},
        ],
    }

    data = client.post("/segments/preview", json={"rules": rules, "sample_size": 0}).json()

    assert data["match_count"] == 1
    assert data["sample_customers"] == []
    assert len(data["warnings"]) == 1
    assert data["warnings"][0].startswith("conditions/1:")


@pytest.mark.integration
def test_preview_rejects_malformed_rules(client):
    response = client.post("/segments/preview", json={"rules": {"operator": "AND", "conditions": [{"value": 1}]}})

    assert response.status_code == 400
    paths = {e["path"] for e in response.json()["details"]["errors"]}
    assert "conditions/0/field" in paths


@pytest.mark.integration
def test_preview_rejects_empty_predicate(client):
    response = client.post(
        "/segments/preview",
        json={"rules": {"field": "total_spent", "operator": "approximately", "value": 5}},
    )

    assert response.status_code == 400
    assert response.json()["details"]["errors"][0]["path"] == "/"


@pytest.mark.integration
def test_preview_sample_size_bounds(client):
    response = client.post("/segments/preview", json={"rules": ACTIVE_BIG_SPENDERS, "sample_size": 500})

    assert response.status_code == 422


# ============================================================================
# CRUD
# ============================================================================


@pytest.mark.integration
def test_create_and_get_segment(client, spending_customers):
    response = client.post(
        "/segments",
        json={"name": "Big spenders", "description": "VIPs", "rules": ACTIVE_BIG_SPENDERS},
        headers={"X-Operator-Id": "ops@example.com"},
    )

    assert response.status_code == 201
    created = response.json()
    assert created["audience_size"] == 1
    assert created["created_by"] == "ops@example.com"

    fetched = client.get(f"/segments/{created['id']}").json()
    assert fetched["name"] == "Big spenders"
    assert fetched["rules"] == ACTIVE_BIG_SPENDERS


@pytest.mark.integration
def test_create_segment_requires_name(client):
    response = client.post("/segments", json={"name": "", "rules": ACTIVE_BIG_SPENDERS})

    assert response.status_code == 422


@pytest.mark.integration
def test_list_segments_by_operator(client, spending_customers):
    client.post("/segments", json={"name": "Mine", "rules": ACTIVE_BIG_SPENDERS}, headers={"X-Operator-Id": "a"})
    client.post("/segments", json={"name": "Other", "rules": ACTIVE_BIG_SPENDERS}, headers={"X-Operator-Id": "b"})

    assert len(client.get("/segments").json()) == 2
    assert [s["name"] for s in client.get("/segments", params={"created_by": "a"}).json()] == ["Mine"]


@pytest.mark.integration
def test_update_segment_rules(client, spending_customers):
    segment_id = client.post("/segments", json={"name": "S", "rules": ACTIVE_BIG_SPENDERS}).json()["id"]

    response = client.put(
        f"/segments/{segment_id}",
        json={"rules": {"field": "status", "operator": "equals", "value": "active"}},
    )

    assert response.status_code == 200
    assert response.json()["audience_size"] == 2
    assert response.json()["name"] == "S"


@pytest.mark.integration
def test_get_unknown_segment(client):
    response = client.get("/segments/999")

    assert response.status_code == 404
    assert response.json()["error"] == "Segment with id '999' not found"


@pytest.mark.integration
def test_delete_segment(client, spending_customers):
    segment_id = client.post("/segments", json={"name": "S", "rules": ACTIVE_BIG_SPENDERS}).json()["id"]

    assert client.delete(f"/segments/{segment_id}").status_code == 204
    assert client.get(f"/segments/{segment_id}").status_code == 404


@pytest.mark.integration
def test_delete_segment_with_sending_campaign(client, segment_factory, campaign_factory):
    segment = segment_factory(ACTIVE_BIG_SPENDERS)
    campaign_factory(segment, status=CampaignStatus.SENDING)

    assert client.delete(f"/segments/{segment.id}").status_code == 409


@pytest.mark.integration
def test_segment_customers_paged(client, customer_factory):
    ids = [customer_factory(status=CustomerStatus.INACTIVE).id for _ in range(5)]
    segment_id = client.post(
        "/segments",
        json={"name": "Dormant", "rules": {"field": "status", "operator": "equals", "value": "inactive"}},
    ).json()["id"]

    data = client.get(f"/segments/{segment_id}/customers", params={"page": 2, "limit": 2}).json()

    assert data["total"] == 5
    assert data["pages"] == 3
    assert [c["id"] for c in data["customers"]] == ids[2:4]
