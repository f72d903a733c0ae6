from __future__ import annotations

import asyncio
import pathlib
import sys
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.config import Settings, resolve_credentials
from billing.domain.models import PaymentAttempt
from billing.domain.statuses import PaymentStatus
from billing.gateway.signature import compute_hash, notification_hash_fields
from billing.main import create_app
from billing.repositories.memory_store import InMemoryDocumentStore
from billing.services.reconciler import SubscriptionReconciler

CFG = Settings(_env_file=None)
CREDS = resolve_credentials(CFG)


def signed_form(order_id: str = "TRX1", status: str = "1", total_amount: str = "3.00") -> dict[str, str]:
    digest = compute_hash(
        notification_hash_fields(CREDS, order_id=order_id, status=status, total_amount=total_amount)
    )
    return {"order_id": order_id, "status": status, "total_amount": total_amount, "hash": digest}


@pytest.fixture()
def store() -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    attempt = PaymentAttempt(
        order_id="TRX1",
        user_id="user-1",
        plan_id="premium_monthly",
        amount=Decimal("3.00"),
        status=PaymentStatus.CHALLENGE_ISSUED,
    )
    asyncio.run(store.create_payment(attempt))
    return store


@pytest.fixture()
def client(store: InMemoryDocumentStore) -> TestClient:
    return TestClient(create_app(CFG, store=store))


def test_valid_notification_activates_subscription(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = client.post("/api/param/webhook", data=signed_form())

    assert response.status_code == 200
    assert response.text == "OK"
    assert response.headers["content-type"].startswith("text/plain")
    assert store.payments["TRX1"]["status"] == "success"
    assert store.users["user-1"]["plan_id"] == "premium_monthly"


def test_repeated_notification_is_acknowledged(client: TestClient, store: InMemoryDocumentStore) -> None:
    client.post("/api/param/webhook", data=signed_form())
    writes = store.writes

    response = client.post("/api/param/webhook", data=signed_form())

    assert response.status_code == 200
    assert response.text == "OK"
    assert store.writes == writes


def test_tampered_amount_is_rejected_before_any_write(
    client: TestClient, store: InMemoryDocumentStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def fail_reconcile(self, event):  # type: ignore[no-untyped-def]
        raise AssertionError("reconcile must not run for an invalid signature")

    monkeypatch.setattr(SubscriptionReconciler, "reconcile", fail_reconcile)
    form = signed_form()
    form["total_amount"] = "0.01"

    response = client.post("/api/param/webhook", data=form)

    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "verification_error"
    assert store.payments["TRX1"]["status"] == "challenge_issued"
    assert store.webhooks == {}


def test_missing_hash_is_rejected(client: TestClient) -> None:
    form = signed_form()
    del form["hash"]

    response = client.post("/api/param/webhook", data=form)

    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "validation_error"


def test_unknown_order_is_not_found(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = client.post("/api/param/webhook", data=signed_form(order_id="TRX404"))

    assert response.status_code == 404
    assert store.webhooks == {}


def test_failure_notification_marks_payment_failed(client: TestClient, store: InMemoryDocumentStore) -> None:
    response = client.post("/api/param/webhook", data=signed_form(status="0"))

    assert response.status_code == 200
    assert store.payments["TRX1"]["status"] == "failed"
    assert "user-1" not in store.users
