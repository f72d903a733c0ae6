from __future__ import annotations

import asyncio
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.config import Settings
from billing.domain.enums import Platform
from billing.domain.models import SubscriptionRecord
from billing.domain.plans import add_months, catalog
from billing.domain.statuses import SubscriptionStatus
from billing.main import create_app
from billing.repositories.memory_store import InMemoryDocumentStore

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
CFG = Settings(_env_file=None, admin_key="admin-secret")
HEADERS = {"Authorization": f"Bearer {CFG.api_bearer_token}"}


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def client(store: InMemoryDocumentStore) -> TestClient:
    return TestClient(create_app(CFG, store=store, clock=lambda: NOW))


def seed(store: InMemoryDocumentStore, expiry: datetime, plan_id: str = "vip_monthly") -> None:
    record = SubscriptionRecord(
        user_id="user-1",
        plan_id=plan_id,
        purchase_date=NOW - timedelta(days=20),
        expiry_date=expiry,
        source_platform=Platform.PARAM,
        source_order_id="TRX1",
        status=SubscriptionStatus.ACTIVE,
    )
    asyncio.run(store.upsert_subscription(record))


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 11, 30), 3) == datetime(2024, 2, 29)
    assert add_months(datetime(2024, 2, 29), 12) == datetime(2025, 2, 28)


def test_plan_expiry() -> None:
    assert catalog.expiry_for("basic_monthly", datetime(2024, 1, 31)) == datetime(2024, 2, 29)
    assert catalog.expiry_for("vip_yearly", datetime(2024, 1, 15)) == datetime(2025, 1, 15)
    assert catalog.expiry_for("premium_3months", datetime(2024, 11, 30)) == datetime(2025, 2, 28)


def test_user_without_subscription(client: TestClient) -> None:
    body = client.get("/api/user/subscription", params={"user_id": "nobody"}, headers=HEADERS).json()
    assert body["hasActiveSubscription"] is False
    assert body["status"] == "inactive"

    features = client.get("/api/user/features", params={"user_id": "nobody"}, headers=HEADERS).json()
    assert features["features"]["basic_matching"] is True
    assert features["features"]["ai_matches"] is False


def test_subscription_expiring_soon(client: TestClient, store: InMemoryDocumentStore) -> None:
    seed(store, NOW + timedelta(days=5, hours=1))

    body = client.get("/api/user/subscription", params={"user_id": "user-1"}, headers=HEADERS).json()

    assert body["hasActiveSubscription"] is True
    assert body["remainingDays"] == 6
    assert body["isExpiringSoon"] is True
    features = client.get("/api/user/features", params={"user_id": "user-1"}, headers=HEADERS).json()
    assert features["features"]["popup_dating"] is True


def test_expired_subscription_is_inactive(client: TestClient, store: InMemoryDocumentStore) -> None:
    seed(store, NOW - timedelta(days=1))

    body = client.get("/api/user/subscription", params={"user_id": "user-1"}, headers=HEADERS).json()

    assert body["hasActiveSubscription"] is False
    assert body["subscriptionType"] == "vip_monthly"


def test_subscription_requires_token(client: TestClient) -> None:
    response = client.get("/api/user/subscription", params={"user_id": "user-1"})
    assert response.status_code == 401


def test_purchase_verify_infers_plan(client: TestClient, store: InMemoryDocumentStore) -> None:
    payload = {"user_id": "user-1", "purchaseToken": "gp-token", "productId": "com.app.premium_yearly"}
    response = client.post("/api/purchases/verify", json=payload, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["subscriptionType"] == "premium_yearly"
    assert body["purchaseToken"] == "gp-token"
    assert body["expiryDate"].startswith("2025-03-01T12:00:00")
    assert store.users["user-1"]["source_platform"] == "android"


def test_purchase_verify_rejects_unknown_plan(client: TestClient) -> None:
    payload = {
        "user_id": "user-1",
        "purchaseToken": "gp-token",
        "productId": "com.app.x",
        "subscriptionType": "gold",
    }
    response = client.post("/api/purchases/verify", json=payload, headers=HEADERS)
    assert response.status_code == 400


def test_admin_update_requires_key(client: TestClient, store: InMemoryDocumentStore) -> None:
    payload = {
        "adminKey": "wrong",
        "userId": "user-1",
        "status": "active",
        "expiryDate": "2030-01-01T00:00:00+00:00",
        "subscriptionType": "basic_yearly",
    }
    assert client.post("/api/admin/update-subscription", json=payload).status_code == 401
    assert store.users == {}

    payload["adminKey"] = "admin-secret"
    response = client.post("/api/admin/update-subscription", json=payload)

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Subscription updated"}
    assert store.users["user-1"]["plan_id"] == "basic_yearly"
    assert store.users["user-1"]["source_platform"] == "admin"


def test_admin_surface_disabled_without_configured_key(store: InMemoryDocumentStore) -> None:
    client = TestClient(create_app(Settings(_env_file=None), store=store))
    payload = {
        "adminKey": "",
        "userId": "user-1",
        "status": "active",
        "expiryDate": "2030-01-01T00:00:00+00:00",
        "subscriptionType": "basic_yearly",
    }
    assert client.post("/api/admin/update-subscription", json=payload).status_code == 401
