"""
End-to-end tests for the organization and usage endpoints.
"""
import pytest
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

from gymquota.core.database import check_connection
from gymquota.features.quota.service import get_quota_service


pytestmark = pytest.mark.skipif(not check_connection(), reason="Database not available")


def _create(client, tier="starter"):
    organization_id = f"gym-{uuid4()}"
    resp = client.post(
        "/v1/organizations",
        json={"organization_id": organization_id, "name": "Iron Temple", "plan_tier": tier},
    )
    assert resp.status_code == 201
    return organization_id


def test_create_and_get_organization(client):
    organization_id = _create(client, tier="growth")

    resp = client.get(f"/v1/organizations/{organization_id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_tier"] == "growth"
    assert body["features"]["push_notification"] is True


def test_create_defaults_to_free(client):
    organization_id = f"gym-{uuid4()}"
    resp = client.post("/v1/organizations", json={"organization_id": organization_id, "name": "Tiny Gym"})
    assert resp.status_code == 201
    assert resp.json()["plan_tier"] == "free"


def test_duplicate_organization_is_conflict(client):
    organization_id = _create(client)
    resp = client.post("/v1/organizations", json={"organization_id": organization_id, "name": "Again"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "conflict"


def test_check_consume_and_deny(client):
    organization_id = _create(client, tier="free")
    base = f"/v1/organizations/{organization_id}/usage/ai_general_request"

    for _ in range(10):
        resp = client.post(f"{base}/consume")
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    check = client.get(base)
    assert check.status_code == 200
    body = check.json()
    assert body["allowed"] is False
    assert body["current"] == 10
    assert body["limit"] == 10
    assert body["remaining"] == 0
    assert body["reset_date"] in body["message"]
    assert body["upgrade_tier"] == "starter"

    enforce = client.post(f"{base}/enforce")
    assert enforce.status_code == 403
    error = enforce.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["details"]["reset_date"] == body["reset_date"]
    assert error["request_id"] == enforce.headers["x-request-id"]


def test_composite_amount_query(client):
    organization_id = _create(client, tier="free")
    base = f"/v1/organizations/{organization_id}/usage/push_notification"
    client.post(f"{base}/consume", json={"amount": 97})

    assert client.get(base).json()["allowed"] is True
    resp = client.get(base, params={"amount": 5})
    assert resp.json()["allowed"] is False
    assert resp.json()["remaining"] == 3


def test_plan_change_applies_immediately(client):
    organization_id = _create(client, tier="free")
    base = f"/v1/organizations/{organization_id}/usage/ai_routine_generation"
    client.post(f"{base}/consume", json={"amount": 5})
    assert client.get(base).json()["allowed"] is False

    resp = client.put(f"/v1/organizations/{organization_id}/plan", json={"plan_tier": "starter"})
    assert resp.status_code == 200
    assert resp.json()["plan_tier"] == "starter"

    check = client.get(base).json()
    assert check["allowed"] is True
    assert check["limit"] == 20
    assert check["current"] == 5


def test_usage_summary(client):
    organization_id = _create(client)
    client.post(f"/v1/organizations/{organization_id}/usage/email_send/consume", json={"amount": 3})

    resp = client.get(f"/v1/organizations/{organization_id}/usage")
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan_tier"] == "starter"
    assert len(body["resources"]) == 6
    email = next(r for r in body["resources"] if r["resource"] == "email_send")
    assert email["current"] == 3
    assert email["limit"] == 500


def test_concurrent_consumes_over_http(client):
    organization_id = _create(client)
    base = f"/v1/organizations/{organization_id}/usage/push_notification"

    def consume(_):
        return client.post(f"{base}/consume").status_code

    with ThreadPoolExecutor(max_workers=10) as pool:
        statuses = list(pool.map(consume, range(50)))

    assert statuses == [200] * 50
    assert client.get(base).json()["current"] == 50


def test_unknown_resource_is_validation_error(client):
    organization_id = _create(client)
    resp = client.get(f"/v1/organizations/{organization_id}/usage/sms_send")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_unknown_organization_is_not_found(client):
    resp = client.get("/v1/organizations/gym-nope/usage/email_send")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"

    resp = client.get("/v1/organizations/gym-nope")
    assert resp.status_code == 404


def test_invalid_amount_rejected(client):
    organization_id = _create(client)
    resp = client.post(f"/v1/organizations/{organization_id}/usage/email_send/consume", json={"amount": 0})
    assert resp.status_code == 422


def test_failed_consume_maps_to_unavailable(client, monkeypatch):
    organization_id = _create(client)
    service = get_quota_service()

    def broken_increment(*args, **kwargs):
        raise ConnectionError("database went away")

    monkeypatch.setattr(service.store, "increment_usage", broken_increment)

    resp = client.post(f"/v1/organizations/{organization_id}/usage/email_send/consume")
    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "quota_unavailable"
    assert body["error"]["details"]["success"] is False


def test_unreadable_usage_fails_closed(client, monkeypatch):
    organization_id = _create(client)
    service = get_quota_service()

    def broken_read(*args, **kwargs):
        raise ConnectionError("database went away")

    monkeypatch.setattr(service.store, "get_usage", broken_read)

    check = client.get(f"/v1/organizations/{organization_id}/usage/email_send").json()
    assert check["allowed"] is False
    assert check["retryable"] is True
    assert check["status"] == "unavailable"

    enforce = client.post(f"/v1/organizations/{organization_id}/usage/email_send/enforce")
    assert enforce.status_code == 503
    assert enforce.json()["error"]["code"] == "quota_unavailable"
