"""Integration tests for the unique-users and activation read endpoints."""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from utils.factories import EventFactory, SignupFactory


def test_unique_users_serves_snapshots_and_live_today(client: TestClient, aggregator, event_store) -> None:
    event_store.add(
        EventFactory.anonymous("a1", {"created_at": datetime(2025, 2, 10, 8, tzinfo=timezone.utc)}),
        EventFactory.anonymous("a2", {"created_at": datetime(2025, 2, 12, 8, tzinfo=timezone.utc)}),
        EventFactory.anonymous("a3", {"created_at": datetime(2025, 2, 12, 9, tzinfo=timezone.utc)}),
    )
    client.get("/v1/cron/backfill-unique-users", params={"days": 2}, headers={"x-platform-cron": "1"})

    response = client.get(
        "/v1/analytics/unique-users",
        params={"start": "2025-02-09", "end": "2025-02-12", "segment": "reach"},
    )

    assert response.status_code == 200
    json_response = response.json()
    assert json_response["segment"] == "reach"
    assert json_response["live_date"] == "2025-02-12"
    assert json_response["missing_dates"] == ["2025-02-09"]
    assert [(d["metric_date"], d["user_count"], d["source"]) for d in json_response["days"]] == [
        ("2025-02-10", 1, "snapshot"),
        ("2025-02-11", 0, "snapshot"),
        ("2025-02-12", 2, "live"),
    ]


@pytest.mark.parametrize(
    "params,code",
    [
        ({"start": "2025-13-01", "end": "2025-02-12"}, "invalid_date"),
        ({"start": "yesterday", "end": "2025-02-12"}, "invalid_date"),
        ({"start": "2025-02-12", "end": "2025-02-01"}, "invalid_range"),
        ({"start": "2023-01-01", "end": "2025-02-12"}, "invalid_range"),
        ({"start": "2025-02-01", "end": "2025-02-12", "segment": "visitors"}, "invalid_segment"),
    ],
)
def test_unique_users_rejects_bad_parameters(client: TestClient, params, code) -> None:
    response = client.get("/v1/analytics/unique-users", params=params)

    assert response.status_code == 400
    json_response = response.json()
    assert json_response["details"][0]["code"] == code
    assert json_response["remediation"]


def test_activation_endpoint(client: TestClient, event_store) -> None:
    signup_at = datetime(2025, 2, 10, 9, tzinfo=timezone.utc)
    event_store.signups = [
        SignupFactory.create({"user_id": "user_1", "signup_at": signup_at}),
        SignupFactory.create({"user_id": "user_2", "signup_at": signup_at + timedelta(days=1)}),
    ]
    event_store.add(
        EventFactory.create({"event_type": "chart_viewed", "user_id": "user_2", "created_at": signup_at + timedelta(days=2)})
    )

    response = client.get("/v1/analytics/activation", params={"start": "2025-02-10", "end": "2025-02-11"})

    assert response.status_code == 200
    json_response = response.json()
    assert json_response["total_signups"] == 2
    assert json_response["activated_users"] == 1
    assert json_response["rate"] == 50.0
    assert [t["date"] for t in json_response["daily_trend"]] == ["2025-02-10", "2025-02-11"]


def test_analytics_endpoints_need_no_cron_credentials(client: TestClient) -> None:
    response = client.get("/v1/analytics/activation", params={"start": "2025-02-10", "end": "2025-02-10"})
    assert response.status_code == 200


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
