from __future__ import annotations

import asyncio
import pathlib
import sys
from decimal import Decimal
from typing import Any, Mapping

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.config import Settings
from billing.domain.models import GatewayCredentials, PaymentAttempt
from billing.domain.plans import catalog
from billing.domain.statuses import PaymentStatus
from billing.errors import AppStateError, ValidationError
from billing.gateway.client import ParamClient
from billing.gateway.three_d import (
    COMPLETE_ACTION,
    INITIATE_ACTION,
    CardData,
    ChallengeCallback,
    FlowState,
    OrderData,
    ThreeDSecureFlow,
    ThreeDSecureSession,
)
from billing.repositories.memory_store import InMemoryDocumentStore
from billing.services.payments_service import PaymentsService

CREDS = GatewayCredentials(
    client_code="10738",
    client_username="Test",
    client_password="Test",
    terminal_id="10738",
    secret_guid="0c13d406-873b-403b-9c09-a5766840d98c",
    endpoint_url="https://param.test/service.asmx",
)
CARD = CardData(
    holder_name="Test User",
    number="4446763125813623",
    expiry_month="12",
    expiry_year="2026",
    cvc="000",
)
ORDER = OrderData(
    order_id="TRX1",
    amount=Decimal("3.00"),
    success_url="https://api.test/api/param/3d/callback",
    failure_url="https://api.test/api/param/fail?order_id=TRX1",
)


def soap(action: str, inner: str) -> str:
    return (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        f"<{action}Response><{action}Result>{inner}</{action}Result></{action}Response>"
        "</soap:Body></soap:Envelope>"
    )


class FakeTransport:
    def __init__(self, *responses: str) -> None:
        self.credentials = CREDS
        self.responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def call(self, action: str, fields: Mapping[str, Any]) -> str:
        self.calls.append((action, dict(fields)))
        return self.responses.pop(0)


CHALLENGE = soap(
    INITIATE_ACTION,
    "<Islem_ID>555</Islem_ID><Islem_GUID>guid-1</Islem_GUID><UCD_URL>https://bank/3d</UCD_URL>"
    "<UCD_MD>md-token</UCD_MD><Sonuc>1</Sonuc><Sonuc_Str>Basarili</Sonuc_Str>",
)


def test_initiate_issues_challenge() -> None:
    transport = FakeTransport(CHALLENGE)
    session = asyncio.run(ThreeDSecureFlow(ParamClient(transport)).initiate(CARD, ORDER))

    assert session.state is FlowState.CHALLENGE_ISSUED
    assert session.challenge_url == "https://bank/3d"
    assert session.session_token == "md-token"
    assert session.provider_ref == "555"
    action, fields = transport.calls[0]
    assert action == INITIATE_ACTION
    assert fields["Islem_Guvenlik_Tip"] == "3D"
    assert fields["Toplam_Tutar"] == "3.00"
    assert fields["Islem_Hash"]


def test_initiate_rejected_by_gateway() -> None:
    transport = FakeTransport(soap(INITIATE_ACTION, "<Sonuc>-2</Sonuc><Sonuc_Str>Kart gecersiz</Sonuc_Str>"))
    session = asyncio.run(ThreeDSecureFlow(ParamClient(transport)).initiate(CARD, ORDER))

    assert session.state is FlowState.FAILED
    assert session.failure_reason == "Kart gecersiz"


def test_initiate_fault_fails_the_flow() -> None:
    fault = (
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body><soap:Fault>'
        "<faultcode>soap:Client</faultcode><faultstring>Card declined</faultstring>"
        "</soap:Fault></soap:Body></soap:Envelope>"
    )
    session = asyncio.run(ThreeDSecureFlow(ParamClient(FakeTransport(fault))).initiate(CARD, ORDER))

    assert session.state is FlowState.FAILED
    assert session.failure_reason == "Card declined"
    assert session.to_metadata()["three_d_state"] == "failed"


def test_initiate_requires_positive_amount() -> None:
    flow = ThreeDSecureFlow(ParamClient(FakeTransport()))
    order = OrderData(order_id="TRX2", amount=Decimal("0"), success_url="s", failure_url="f")
    with pytest.raises(ValidationError):
        asyncio.run(flow.initiate(CARD, order))


def test_complete_requires_challenge_state() -> None:
    transport = FakeTransport()
    flow = ThreeDSecureFlow(ParamClient(transport))
    session = ThreeDSecureSession(order=ORDER, state=FlowState.FAILED)
    with pytest.raises(AppStateError):
        asyncio.run(flow.complete(session, ChallengeCallback(order_id="TRX1", session_token="md-token")))
    assert transport.calls == []


def test_complete_rejects_mismatched_order() -> None:
    flow = ThreeDSecureFlow(ParamClient(FakeTransport()))
    session = ThreeDSecureSession(order=ORDER, state=FlowState.CHALLENGE_ISSUED)
    with pytest.raises(ValidationError):
        asyncio.run(flow.complete(session, ChallengeCallback(order_id="OTHER", session_token="md-token")))


def test_failed_authentication_skips_gateway_call() -> None:
    transport = FakeTransport()
    flow = ThreeDSecureFlow(ParamClient(transport))
    session = ThreeDSecureSession(order=ORDER, state=FlowState.CHALLENGE_ISSUED)
    result = asyncio.run(
        flow.complete(session, ChallengeCallback(order_id="TRX1", session_token="md-token", md_status="0"))
    )
    assert result.state is FlowState.FAILED
    assert transport.calls == []


def test_full_flow_and_completion_hash() -> None:
    transport = FakeTransport(
        CHALLENGE,
        soap(COMPLETE_ACTION, "<Sonuc>1</Sonuc><Dekont_ID>777</Dekont_ID><Islem_ID>555</Islem_ID>"),
    )
    flow = ThreeDSecureFlow(ParamClient(transport))
    session = asyncio.run(flow.initiate(CARD, ORDER))

    # survives persistence between the two steps
    restored = ThreeDSecureSession.from_metadata("TRX1", session.to_metadata())
    done = asyncio.run(
        flow.complete(restored, ChallengeCallback(order_id="TRX1", session_token="md-token", md_status="1"))
    )

    assert done.state is FlowState.COMPLETED
    assert done.receipt_id == "777"
    (_, initiate_fields), (action, complete_fields) = transport.calls
    assert action == COMPLETE_ACTION
    assert complete_fields["UCD_MD"] == "md-token"
    assert complete_fields["Islem_GUID"] == "guid-1"
    assert complete_fields["Islem_Hash"] == initiate_fields["Islem_Hash"]


def test_from_metadata_without_session() -> None:
    with pytest.raises(AppStateError):
        ThreeDSecureSession.from_metadata("TRX1", {})


def test_card_repr_is_masked() -> None:
    assert "4446763125813623" not in repr(CARD)
    assert "cvc" not in repr(CARD)


class SlowReadStore(InMemoryDocumentStore):
    async def get_payment(self, order_id: str):
        attempt = await super().get_payment(order_id)
        await asyncio.sleep(0)
        return attempt


def test_concurrent_callbacks_complete_once() -> None:
    store = SlowReadStore()
    issued = ThreeDSecureSession(
        order=ORDER,
        state=FlowState.CHALLENGE_ISSUED,
        islem_guid="guid-1",
        session_token="md-token",
    )
    attempt = PaymentAttempt(
        order_id="TRX1",
        user_id="user-1",
        plan_id="premium_monthly",
        amount=Decimal("3.00"),
        status=PaymentStatus.CHALLENGE_ISSUED,
        metadata=issued.to_metadata(),
    )
    asyncio.run(store.create_payment(attempt))
    transport = FakeTransport(soap(COMPLETE_ACTION, "<Sonuc>1</Sonuc><Dekont_ID>777</Dekont_ID>"))
    service = PaymentsService(store, catalog, ParamClient(transport), Settings(_env_file=None))
    callback = ChallengeCallback(order_id="TRX1", session_token="md-token", md_status="1")

    async def deliver_twice():
        return await asyncio.gather(
            service.complete_challenge(callback),
            service.complete_challenge(callback),
            return_exceptions=True,
        )

    results = asyncio.run(deliver_twice())

    assert [call[0] for call in transport.calls] == [COMPLETE_ACTION]
    assert sum(1 for r in results if isinstance(r, ThreeDSecureSession) and r.state is FlowState.COMPLETED) == 1
    assert sum(1 for r in results if isinstance(r, AppStateError)) == 1
    assert store.payments["TRX1"]["status"] == "user_returned_success"
