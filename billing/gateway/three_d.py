from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any

from billing.domain.enums import Currency, SecurityTier
from billing.errors import AppStateError, ProtocolFaultError, ValidationError

from .client import ParamClient, result_code, result_message
from .signature import normalize_amount, payment_hash_fields, sign

logger = logging.getLogger(__name__)

INITIATE_ACTION = "TP_WMD_UCD"
COMPLETE_ACTION = "TP_WMD_Pay"

# mdStatus values for which the issuer completed (or attempted) authentication
AUTHENTICATED_MD_STATUSES = frozenset({"1", "2", "3", "4"})


class FlowState(str, Enum):
    INITIATED = "initiated"
    CHALLENGE_ISSUED = "challenge_issued"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CardData:
    holder_name: str
    number: str
    expiry_month: str
    expiry_year: str
    cvc: str
    holder_phone: str = ""

    def __repr__(self) -> str:
        return f"CardData(holder_name={self.holder_name!r}, number='****{self.number[-4:]}')"


@dataclass(frozen=True)
class OrderData:
    order_id: str
    amount: Decimal
    success_url: str
    failure_url: str
    installment: int = 1
    description: str = ""
    client_ip: str = "127.0.0.1"
    ref_url: str = ""
    currency: Currency = Currency.TRY
    custom_data: tuple[str, ...] = ()

    @property
    def item_amount(self) -> str:
        return normalize_amount(self.amount)

    @property
    def total_amount(self) -> str:
        return normalize_amount(self.amount)


@dataclass(frozen=True)
class ChallengeCallback:
    """What the bank posts back after the user finishes the 3-D challenge."""

    order_id: str
    session_token: str
    md_status: str | None = None
    islem_guid: str | None = None


@dataclass(frozen=True)
class ThreeDSecureSession:
    order: OrderData
    state: FlowState = FlowState.INITIATED
    challenge_url: str | None = None
    challenge_html: str | None = None
    provider_ref: str | None = None
    islem_guid: str | None = None
    session_token: str | None = None
    receipt_id: str | None = None
    failure_reason: str | None = None
    response: dict[str, str] = field(default_factory=dict)

    @property
    def order_id(self) -> str:
        return self.order.order_id

    def to_metadata(self) -> dict[str, Any]:
        """Snapshot persisted with the payment attempt between the two steps."""
        return {
            "three_d_state": self.state.value,
            "installment": self.order.installment,
            "item_amount": self.order.item_amount,
            "success_url": self.order.success_url,
            "failure_url": self.order.failure_url,
            "islem_guid": self.islem_guid,
            "provider_ref": self.provider_ref,
            "session_token": self.session_token,
        }

    @classmethod
    def from_metadata(cls, order_id: str, metadata: dict[str, Any]) -> "ThreeDSecureSession":
        try:
            order = OrderData(
                order_id=order_id,
                amount=Decimal(str(metadata["item_amount"])),
                success_url=str(metadata["success_url"]),
                failure_url=str(metadata["failure_url"]),
                installment=int(metadata.get("installment") or 1),
            )
            state = FlowState(metadata["three_d_state"])
        except (KeyError, ValueError, ArithmeticError) as exc:
            raise AppStateError(f"No 3-D Secure session for order {order_id}") from exc
        return cls(
            order=order,
            state=state,
            provider_ref=metadata.get("provider_ref"),
            islem_guid=metadata.get("islem_guid"),
            session_token=metadata.get("session_token"),
        )


class ThreeDSecureFlow:
    """Two-step 3-D Secure card payment against Param.

    ``initiate`` moves a session to CHALLENGE_ISSUED (or FAILED); ``complete``
    moves CHALLENGE_ISSUED to COMPLETED or FAILED. No other transition exists.
    """

    def __init__(self, client: ParamClient) -> None:
        self.client = client

    def _hash_fields(self, order: OrderData) -> list[tuple[str, str]]:
        return payment_hash_fields(
            self.client.credentials,
            installment=order.installment,
            item_amount=order.item_amount,
            total_amount=order.total_amount,
            order_id=order.order_id,
            failure_url=order.failure_url,
            success_url=order.success_url,
        )

    def build_initiate_request(self, card: CardData, order: OrderData) -> dict[str, Any]:
        creds = self.client.credentials
        fields: list[tuple[str, Any]] = [
            ("G", creds.auth_block()),
            ("GUID", creds.secret_guid),
            ("KK_Sahibi", card.holder_name),
            ("KK_No", card.number),
            ("KK_SK_Ay", card.expiry_month),
            ("KK_SK_Yil", card.expiry_year),
            ("KK_CVC", card.cvc),
            ("KK_Sahibi_GSM", card.holder_phone),
            ("Hata_URL", order.failure_url),
            ("Basarili_URL", order.success_url),
            ("Siparis_ID", order.order_id),
            ("Siparis_Aciklama", order.description),
            ("Taksit", str(order.installment)),
            ("Islem_Tutar", order.item_amount),
            ("Toplam_Tutar", order.total_amount),
        ]
        signed = sign(fields, self._hash_fields(order))
        request = signed.as_dict()
        request["Islem_Guvenlik_Tip"] = SecurityTier.THREE_D.value
        request["Islem_ID"] = ""
        request["IPAdr"] = order.client_ip
        request["Ref_URL"] = order.ref_url
        for index, value in enumerate(order.custom_data[:5], start=1):
            request[f"Data{index}"] = value
        request["Doviz"] = order.currency.value
        return request

    async def initiate(self, card: CardData, order: OrderData) -> ThreeDSecureSession:
        if order.amount <= 0:
            raise ValidationError("Amount must be positive")
        session = ThreeDSecureSession(order=order)
        try:
            result = await self.client.invoke(INITIATE_ACTION, self.build_initiate_request(card, order))
        except ProtocolFaultError as exc:
            logger.info(
                "3d initiation fault",
                extra={"order_id": order.order_id, "action": exc.action, "outcome": FlowState.FAILED.value},
            )
            return replace(session, state=FlowState.FAILED, failure_reason=exc.message)
        code = result_code(result)
        if code is None or code <= 0:
            reason = result_message(result, "Payment initiation rejected")
            logger.info(
                "3d initiation failed",
                extra={"order_id": order.order_id, "status": code, "outcome": FlowState.FAILED.value},
            )
            return replace(session, state=FlowState.FAILED, failure_reason=reason, response=result.fields)

        challenge_url = result.get("UCD_URL") or result.get("Redirect_URL")
        challenge_html = result.get("UCD_HTML")
        if not challenge_url and not challenge_html:
            logger.info("3d initiation without challenge", extra={"order_id": order.order_id})
            return replace(
                session,
                state=FlowState.FAILED,
                failure_reason="Gateway did not return a 3-D Secure challenge",
                response=result.fields,
            )
        logger.info(
            "3d challenge issued",
            extra={"order_id": order.order_id, "outcome": FlowState.CHALLENGE_ISSUED.value},
        )
        return replace(
            session,
            state=FlowState.CHALLENGE_ISSUED,
            challenge_url=challenge_url,
            challenge_html=challenge_html,
            provider_ref=result.get("Islem_ID"),
            islem_guid=result.get("Islem_GUID"),
            session_token=result.get("UCD_MD"),
            response=result.fields,
        )

    def build_complete_request(self, session: ThreeDSecureSession, callback: ChallengeCallback) -> dict[str, Any]:
        creds = self.client.credentials
        fields: list[tuple[str, Any]] = [
            ("G", creds.auth_block()),
            ("GUID", creds.secret_guid),
            ("UCD_MD", callback.session_token),
            ("Islem_GUID", callback.islem_guid or session.islem_guid or ""),
            ("Siparis_ID", session.order_id),
        ]
        # Same hash derivation as the initiation step.
        return sign(fields, self._hash_fields(session.order)).as_dict()

    async def complete(self, session: ThreeDSecureSession, callback: ChallengeCallback) -> ThreeDSecureSession:
        if session.state is not FlowState.CHALLENGE_ISSUED:
            raise AppStateError(
                f"Cannot complete 3-D Secure payment in state {session.state.value}",
                details={"order_id": session.order_id},
            )
        if callback.order_id != session.order_id:
            raise ValidationError("Callback order id does not match the session")
        if not callback.session_token:
            raise ValidationError("Missing 3-D Secure session token")

        if callback.md_status is not None and str(callback.md_status) not in AUTHENTICATED_MD_STATUSES:
            logger.info(
                "3d authentication rejected by issuer",
                extra={"order_id": session.order_id, "status": callback.md_status},
            )
            return replace(
                session,
                state=FlowState.FAILED,
                session_token=callback.session_token,
                failure_reason=f"3-D Secure authentication failed (mdStatus={callback.md_status})",
            )

        result = await self.client.invoke(COMPLETE_ACTION, self.build_complete_request(session, callback))
        code = result_code(result)
        if code is None or code <= 0:
            reason = result_message(result, "") or result.get("Sonuc_Ack") or "Payment was not approved"
            logger.info("3d completion failed", extra={"order_id": session.order_id, "status": code})
            return replace(
                session,
                state=FlowState.FAILED,
                session_token=callback.session_token,
                failure_reason=reason,
                response=result.fields,
            )
        logger.info(
            "3d payment completed",
            extra={"order_id": session.order_id, "outcome": FlowState.COMPLETED.value},
        )
        return replace(
            session,
            state=FlowState.COMPLETED,
            session_token=callback.session_token,
            provider_ref=result.get("Islem_ID") or session.provider_ref,
            receipt_id=result.get("Dekont_ID"),
            response=result.fields,
        )
