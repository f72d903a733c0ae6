from __future__ import annotations

import logging
from typing import Any, Mapping

from billing.domain.models import GatewayCredentials, VerifiedEvent
from billing.domain.statuses import EventStatus
from billing.errors import ValidationError, VerificationError
from billing.gateway.signature import compute_hash, hashes_match, notification_hash_fields

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("order_id", "status", "total_amount")


class WebhookVerifier:
    """Checks the integrity hash Param attaches to payment notifications."""

    def __init__(self, credentials: GatewayCredentials) -> None:
        self.credentials = credentials

    def expected_hash(self, payload: Mapping[str, Any]) -> str:
        return compute_hash(
            notification_hash_fields(
                self.credentials,
                order_id=str(payload["order_id"]),
                status=str(payload["status"]),
                total_amount=payload["total_amount"],
            )
        )

    def verify(self, payload: Mapping[str, Any], provided_hash: str | None) -> bool:
        missing = [name for name in REQUIRED_FIELDS if not str(payload.get(name) or "").strip()]
        if missing or not provided_hash:
            logger.info(
                "webhook verification missing fields",
                extra={"order_id": str(payload.get("order_id") or ""), "event": ",".join(missing) or "hash"},
            )
            return False
        try:
            expected = self.expected_hash(payload)
        except ValidationError:
            return False
        ok = hashes_match(expected, provided_hash)
        if not ok:
            logger.info(
                "webhook signature mismatch",
                extra={"order_id": str(payload.get("order_id") or "")},
            )
        return ok

    def verified_event(self, payload: Mapping[str, Any]) -> VerifiedEvent:
        """Verify and convert a notification; raise instead of returning False."""
        missing = [name for name in (*REQUIRED_FIELDS, "hash") if not str(payload.get(name) or "").strip()]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing": missing},
            )
        if not self.verify(payload, str(payload.get("hash"))):
            raise VerificationError("Invalid signature", details={"order_id": str(payload.get("order_id"))})
        return VerifiedEvent(
            order_id=str(payload["order_id"]).strip(),
            status=EventStatus.from_provider(payload["status"]),
            total_amount=str(payload["total_amount"]),
            provider_ref=str(payload.get("provider_ref") or payload.get("Islem_ID") or "") or None,
            raw={k: v for k, v in payload.items() if k != "hash"},
        )
