from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from billing.domain.enums import SecurityTier
from billing.errors import ValidationError

from .client import ParamClient, result_code, result_message
from .parser import extract_records
from .signature import payment_hash_fields, sign
from .three_d import CardData, OrderData

logger = logging.getLogger(__name__)

SAVE_ACTION = "KS_Kart_Ekle"
LIST_ACTION = "KS_Kart_Liste"
DELETE_ACTION = "KS_Kart_Sil"
PAY_ACTION = "KS_Tahsilat"
LIST_RECORD_TAG = "Temp"


def _is_ok(code: Any) -> bool:
    return code == 1 or (isinstance(code, str) and code.strip() == "1")


@dataclass(frozen=True)
class StoredCard:
    card_guid: str
    label: str = ""
    holder_name: str = ""
    masked_number: str = ""
    bank: str = ""


@dataclass(frozen=True)
class CardOperationResult:
    ok: bool
    card_guid: str | None = None
    reason: str = ""
    raw: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredCardPayment:
    ok: bool
    order_id: str
    provider_ref: str | None = None
    redirect_url: str | None = None
    reason: str = ""
    raw: dict[str, str] = field(default_factory=dict)


class SavedCardManager:
    """Card-on-file operations; each is a single Param round trip."""

    def __init__(self, client: ParamClient) -> None:
        self.client = client

    async def save(self, card: CardData, *, label: str = "", owner_ref: str = "") -> CardOperationResult:
        if not card.number or not card.expiry_month or not card.expiry_year:
            raise ValidationError("Card number and expiry are required")
        creds = self.client.credentials
        request = {
            "G": creds.auth_block(),
            "GUID": creds.secret_guid,
            "KK_Sahibi": card.holder_name,
            "KK_No": card.number,
            "KK_SK_Ay": card.expiry_month,
            "KK_SK_Yil": card.expiry_year,
            "Kart_Adi": label,
            "Data1": owner_ref,
        }
        result = await self.client.invoke(SAVE_ACTION, request)
        code = result.get("Sonuc")
        if not _is_ok(code):
            reason = result_message(result, "Card could not be saved")
            logger.info("saved card rejected", extra={"action": SAVE_ACTION, "status": code})
            return CardOperationResult(ok=False, reason=reason, raw=result.fields)
        card_guid = result.get("KS_GUID")
        logger.info("card saved", extra={"action": SAVE_ACTION, "status": code})
        return CardOperationResult(ok=True, card_guid=card_guid, reason=result_message(result), raw=result.fields)

    async def list_cards(self, *, card_guid: str = "", label: str = "") -> list[StoredCard]:
        creds = self.client.credentials
        request = {
            "G": creds.auth_block(),
            "Kart_Adi": label,
            "KS_GUID": card_guid,
        }
        result = await self.client.invoke(LIST_ACTION, request)
        rows = extract_records(result.body, LIST_RECORD_TAG)
        if not rows and result.get("KS_GUID"):
            rows = [result.fields]
        cards = [
            StoredCard(
                card_guid=row.get("KS_GUID", ""),
                label=row.get("Kart_Adi", ""),
                holder_name=row.get("KK_Sahibi", ""),
                masked_number=row.get("KK_No", ""),
                bank=row.get("KK_Banka", ""),
            )
            for row in rows
            if row.get("KS_GUID")
        ]
        logger.info("saved cards listed", extra={"action": LIST_ACTION, "status": len(cards)})
        return cards

    async def delete(self, card_guid: str) -> CardOperationResult:
        if not card_guid:
            raise ValidationError("Missing stored card handle")
        request = {
            "G": self.client.credentials.auth_block(),
            "KS_GUID": card_guid,
            "KK_Islem_ID": "",
        }
        result = await self.client.invoke(DELETE_ACTION, request)
        code = result.get("Sonuc")
        if not _is_ok(code):
            reason = result_message(result, "Card could not be deleted")
            logger.info("saved card delete rejected", extra={"action": DELETE_ACTION, "status": code})
            return CardOperationResult(ok=False, card_guid=card_guid, reason=reason, raw=result.fields)
        logger.info("card deleted", extra={"action": DELETE_ACTION, "status": code})
        return CardOperationResult(ok=True, card_guid=card_guid, reason=result_message(result), raw=result.fields)

    async def pay(
        self,
        card_guid: str,
        cvv: str,
        order: OrderData,
        *,
        security_tier: SecurityTier = SecurityTier.NON_3D,
        holder_phone: str = "",
    ) -> StoredCardPayment:
        if not card_guid:
            raise ValidationError("Missing stored card handle")
        if order.amount <= 0:
            raise ValidationError("Amount must be positive")
        creds = self.client.credentials
        fields: list[tuple[str, Any]] = [
            ("G", creds.auth_block()),
            ("GUID", creds.secret_guid),
            ("KS_GUID", card_guid),
            ("CVV", cvv),
            ("KK_Sahibi_GSM", holder_phone),
            ("Hata_URL", order.failure_url),
            ("Basarili_URL", order.success_url),
            ("Siparis_ID", order.order_id),
            ("Siparis_Aciklama", order.description),
            ("Taksit", str(order.installment)),
            ("Islem_Tutar", order.item_amount),
            ("Toplam_Tutar", order.total_amount),
        ]
        hash_fields = payment_hash_fields(
            creds,
            installment=order.installment,
            item_amount=order.item_amount,
            total_amount=order.total_amount,
            order_id=order.order_id,
        )
        request = sign(fields, hash_fields).as_dict()
        request["Islem_Guvenlik_Tip"] = security_tier.value
        request["Islem_ID"] = ""
        request["IPAdr"] = order.client_ip
        request["Ref_URL"] = order.ref_url
        for index, value in enumerate(order.custom_data[:5], start=1):
            request[f"Data{index}"] = value

        result = await self.client.invoke(PAY_ACTION, request)
        code = result_code(result)
        if code is None or code <= 0:
            reason = result_message(result, "Payment was not approved")
            logger.info(
                "stored card payment failed",
                extra={"order_id": order.order_id, "action": PAY_ACTION, "status": code},
            )
            return StoredCardPayment(ok=False, order_id=order.order_id, reason=reason, raw=result.fields)
        logger.info(
            "stored card payment accepted",
            extra={"order_id": order.order_id, "action": PAY_ACTION, "status": code},
        )
        return StoredCardPayment(
            ok=True,
            order_id=order.order_id,
            provider_ref=result.get("Islem_ID"),
            redirect_url=result.get("UCD_URL") if security_tier is SecurityTier.THREE_D else None,
            reason=result_message(result),
            raw=result.fields,
        )
