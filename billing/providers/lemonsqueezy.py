from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from billing.config import Settings
from billing.domain.plans import Plan
from billing.errors import TransportError, ValidationError, VerificationError
from billing.gateway.signature import hashes_match, hmac_hex_digest

logger = logging.getLogger(__name__)

JSON_API = "application/vnd.api+json"

HANDLED_EVENTS = frozenset(
    {
        "order_created",
        "subscription_created",
        "subscription_updated",
        "subscription_cancelled",
    }
)


@dataclass(frozen=True)
class LemonSqueezyEvent:
    """A verified Lemon Squeezy webhook, reduced to what subscriptions need."""

    name: str
    resource_id: str
    user_id: str | None = None
    plan_id: str | None = None
    user_email: str | None = None
    status: str | None = None
    renews_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"lemonsqueezy:{self.resource_id}:{self.name}:{self.status or ''}"


def _parse_ls_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class LemonSqueezyClient:
    """Hosted checkout creation and webhook verification for Lemon Squeezy.

    - create_checkout(): POST /checkouts with a custom price, returns the URL
    - parse_webhook(): checks ``X-Signature`` then decodes the event body
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.base_url = settings.lemon_squeezy_base_url.rstrip("/")
        self.transport = transport

    def build_checkout_payload(
        self,
        plan: Plan,
        variant_id: str,
        *,
        user_id: str,
        success_url: str,
        user_email: str | None = None,
    ) -> dict[str, Any]:
        return {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "custom_price": plan.checkout_price_cents,
                    "product_options": {
                        "enabled_variants": [variant_id],
                        "redirect_url": success_url,
                        "receipt_button_text": "Go to Dashboard",
                        "receipt_link_url": success_url,
                        "receipt_thank_you_note": "Thank you for your purchase!",
                    },
                    "checkout_options": {"embed": False, "media": False, "button_color": "#22c55e"},
                    "checkout_data": {
                        "email": user_email,
                        "custom": {"user_id": user_id, "subscription_type": plan.plan_id},
                    },
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": self.settings.lemon_squeezy_store_id}},
                    "variant": {"data": {"type": "variants", "id": variant_id}},
                },
            }
        }

    async def create_checkout(
        self,
        plan: Plan,
        *,
        user_id: str,
        success_url: str,
        user_email: str | None = None,
    ) -> str:
        variant_id = self.settings.lemon_variant_id(plan.plan_id)
        if not variant_id:
            raise ValidationError(f"Invalid subscription type: {plan.plan_id}")
        payload = self.build_checkout_payload(
            plan, variant_id, user_id=user_id, success_url=success_url, user_email=user_email
        )
        url = f"{self.base_url}/checkouts"
        headers = {
            "Accept": JSON_API,
            "Content-Type": JSON_API,
            "Authorization": f"Bearer {self.settings.lemon_squeezy_api_key}",
        }
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.param_timeout_seconds), transport=self.transport
            ) as client:
                resp = await client.post(url, headers=headers, content=json.dumps(payload))
        except httpx.HTTPError as exc:
            raise TransportError("Checkout provider unreachable", details={"provider": "lemonsqueezy"}) from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        if resp.status_code >= 400:
            logger.info(
                "lemonsqueezy checkout failed",
                extra={"provider": "lemonsqueezy", "status": resp.status_code, "latency_ms": latency_ms},
            )
            raise TransportError(
                "Failed to create checkout",
                details={"provider": "lemonsqueezy", "status_code": resp.status_code},
            )
        try:
            checkout_url = str(resp.json()["data"]["attributes"]["url"])
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError("Unexpected checkout response", details={"provider": "lemonsqueezy"}) from exc
        logger.info(
            "lemonsqueezy checkout created",
            extra={
                "provider": "lemonsqueezy",
                "user_id": user_id,
                "plan_id": plan.plan_id,
                "latency_ms": latency_ms,
            },
        )
        return checkout_url

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        secret = self.settings.lemon_squeezy_webhook_secret
        if not secret or not signature:
            return False
        return hashes_match(hmac_hex_digest(body, secret), signature.strip())

    def parse_webhook(self, body: bytes, signature: str | None, event_name: str | None) -> LemonSqueezyEvent:
        if not self.verify_signature(body, signature):
            raise VerificationError("Invalid signature", details={"provider": "lemonsqueezy"})
        try:
            document = json.loads(body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(document, dict):
            raise ValidationError("Webhook body is not a JSON object")
        meta = document.get("meta") or {}
        name = event_name or meta.get("event_name") or ""
        data = document.get("data") or {}
        attributes = data.get("attributes") or {}
        custom = meta.get("custom_data") or {}
        return LemonSqueezyEvent(
            name=str(name),
            resource_id=str(data.get("id") or ""),
            user_id=custom.get("user_id"),
            plan_id=custom.get("subscription_type"),
            user_email=attributes.get("user_email"),
            status=attributes.get("status"),
            renews_at=_parse_ls_datetime(attributes.get("renews_at")),
            raw=document,
        )
