from __future__ import annotations

import json
import pathlib
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.config import Settings
from billing.gateway.signature import hmac_hex_digest
from billing.main import create_app
from billing.repositories.memory_store import InMemoryDocumentStore

SECRET = "whsec"
CFG = Settings(
    _env_file=None,
    lemon_squeezy_api_key="ls-key",
    lemon_squeezy_store_id="42",
    lemon_squeezy_webhook_secret=SECRET,
    lemon_vip_monthly_variant_id="9001",
)
HEADERS = {"Authorization": f"Bearer {CFG.api_bearer_token}"}


def lemon_api(request: httpx.Request) -> httpx.Response:
    assert request.url.path.endswith("/checkouts")
    assert request.headers["Authorization"] == "Bearer ls-key"
    payload = json.loads(request.content)
    attributes = payload["data"]["attributes"]
    assert attributes["custom_price"] == 749
    assert attributes["checkout_data"]["custom"] == {"user_id": "user-1", "subscription_type": "vip_monthly"}
    assert payload["data"]["relationships"]["variant"]["data"]["id"] == "9001"
    return httpx.Response(201, json={"data": {"attributes": {"url": "https://shop.test/checkout/abc"}}})


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def client(store: InMemoryDocumentStore) -> TestClient:
    return TestClient(create_app(CFG, store=store, http_transport=httpx.MockTransport(lemon_api)))


def order_created(order_id: str = "5001", plan_id: str = "vip_monthly") -> bytes:
    return json.dumps(
        {
            "meta": {"event_name": "order_created", "custom_data": {"user_id": "user-1", "subscription_type": plan_id}},
            "data": {"id": order_id, "type": "orders", "attributes": {"status": "paid", "user_email": "u@test"}},
        }
    ).encode()


def post_webhook(client: TestClient, body: bytes, event: str = "order_created", signature: str | None = None):
    headers = {
        "Content-Type": "application/json",
        "X-Event-Name": event,
        "X-Signature": signature if signature is not None else hmac_hex_digest(body, SECRET),
    }
    return client.post("/api/lemonsqueezy/webhook", content=body, headers=headers)


def test_create_checkout(client: TestClient) -> None:
    payload = {
        "user_id": "user-1",
        "subscriptionType": "vip_monthly",
        "successUrl": "https://app.test/ok",
        "cancelUrl": "https://app.test/cancel",
    }
    response = client.post("/api/lemonsqueezy/create-checkout", json=payload, headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"url": "https://shop.test/checkout/abc"}


def test_order_created_activates_subscription(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = post_webhook(client, order_created())

    assert response.status_code == 200
    assert response.json() == {"received": True}
    user = store.users["user-1"]
    assert user["status"] == "active"
    assert user["plan_id"] == "vip_monthly"
    assert user["source_platform"] == "lemonsqueezy"


def test_bad_signature_is_rejected(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = post_webhook(client, order_created(), signature="00" * 32)

    assert response.status_code == 400
    assert store.users == {}
    assert store.webhooks == {}


def test_repeated_event_is_ignored(client: TestClient, store: InMemoryDocumentStore) -> None:
    post_webhook(client, order_created())
    store.users["user-1"]["plan_id"] = "changed"

    response = post_webhook(client, order_created())

    assert response.status_code == 200
    assert store.users["user-1"]["plan_id"] == "changed"


def test_subscription_cancelled_keeps_expiry(client: TestClient, store: InMemoryDocumentStore) -> None:
    post_webhook(client, order_created())
    expiry = store.users["user-1"]["expiry_date"]
    body = json.dumps(
        {
            "meta": {"custom_data": {"user_id": "user-1"}},
            "data": {"id": "sub-1", "attributes": {"status": "cancelled"}},
        }
    ).encode()

    response = post_webhook(client, body, event="subscription_cancelled")

    assert response.status_code == 200
    assert store.users["user-1"]["status"] == "cancelled"
    assert store.users["user-1"]["expiry_date"] == expiry


def test_unknown_plan_does_not_consume_event(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = post_webhook(client, order_created(plan_id="gold"))

    assert response.status_code == 400
    assert store.webhooks == {}
