from __future__ import annotations

import logging
import math
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from urllib.parse import urlencode

from billing.config import Settings
from billing.domain.enums import Platform, PlanTier, SecurityTier
from billing.domain.models import PaymentAttempt, SubscriptionRecord
from billing.domain.plans import Plan, PlanCatalog, features_for
from billing.domain.statuses import PaymentStatus, SubscriptionStatus
from billing.errors import AppStateError, BillingError, NotFoundError, ValidationError
from billing.gateway.client import ParamClient
from billing.gateway.saved_cards import CardOperationResult, SavedCardManager, StoredCard, StoredCardPayment
from billing.gateway.three_d import (
    CardData,
    ChallengeCallback,
    FlowState,
    OrderData,
    ThreeDSecureFlow,
    ThreeDSecureSession,
)
from billing.providers.lemonsqueezy import HANDLED_EVENTS, LemonSqueezyClient, LemonSqueezyEvent
from billing.repositories.base import DocumentStore
from billing.services.reconciler import utcnow

EXPIRING_SOON_DAYS = 7

# Statuses a browser redirect or 3-D callback may still overwrite.
_OPEN_STATUSES = frozenset(
    {
        PaymentStatus.PENDING,
        PaymentStatus.CHALLENGE_ISSUED,
        PaymentStatus.USER_RETURNED_SUCCESS,
        PaymentStatus.USER_RETURNED_FAIL,
    }
)


def new_order_id() -> str:
    return f"TRX{int(time.time() * 1000)}{secrets.token_hex(5)[:9]}"


@dataclass(frozen=True)
class PaymentStart:
    order_id: str
    status: PaymentStatus
    challenge_url: str | None = None
    challenge_html: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class SubscriptionView:
    user_id: str
    active: bool
    record: SubscriptionRecord | None = None
    remaining_days: int | None = None

    @property
    def tier(self) -> PlanTier | None:
        plan_id = self.record.plan_id if self.record else None
        if not plan_id:
            return None
        prefix = plan_id.split("_", 1)[0]
        try:
            return PlanTier(prefix)
        except ValueError:
            return None

    @property
    def is_expiring_soon(self) -> bool | None:
        if self.remaining_days is None:
            return None
        return self.remaining_days <= EXPIRING_SOON_DAYS


class PaymentsService:
    """Business logic for payments and subscriptions."""

    def __init__(
        self,
        store: DocumentStore,
        plans: PlanCatalog,
        client: ParamClient,
        cfg: Settings,
        lemonsqueezy: LemonSqueezyClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.plans = plans
        self.settings = cfg
        self.three_d = ThreeDSecureFlow(client)
        self.cards = SavedCardManager(client)
        self.lemonsqueezy = lemonsqueezy or LemonSqueezyClient(cfg)
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # Param card payments

    def _callback_url(self, path: str, **params: str) -> str:
        base = self.settings.base_url.rstrip("/")
        return f"{base}{path}?{urlencode(params)}" if params else f"{base}{path}"

    def _order_for(
        self,
        plan: Plan,
        order_id: str,
        user_id: str,
        *,
        installment: int,
        success_url: str,
        client_ip: str | None = None,
    ) -> OrderData:
        return OrderData(
            order_id=order_id,
            amount=plan.price,
            success_url=success_url,
            failure_url=self._callback_url("/api/param/fail", order_id=order_id, user_id=user_id),
            installment=installment,
            description=plan.display_name,
            ref_url=self.settings.base_url,
            client_ip=client_ip or "127.0.0.1",
            custom_data=(user_id, plan.plan_id),
        )

    async def _create_attempt(self, plan: Plan, order_id: str, user_id: str, user_email: str | None) -> None:
        now = self.clock()
        attempt = PaymentAttempt(
            order_id=order_id,
            user_id=user_id,
            plan_id=plan.plan_id,
            amount=plan.price,
            created_at=now,
            updated_at=now,
            user_email=user_email,
        )
        await self.store.create_payment(attempt)

    async def start_payment(
        self,
        user_id: str,
        plan_id: str,
        card: CardData,
        *,
        user_email: str | None = None,
        installment: int = 1,
        client_ip: str | None = None,
    ) -> PaymentStart:
        if not user_id:
            raise ValidationError("Missing user id")
        plan = self.plans.require(plan_id)
        order_id = new_order_id()
        order = self._order_for(
            plan,
            order_id,
            user_id,
            installment=installment,
            success_url=self._callback_url("/api/param/3d/callback"),
            client_ip=client_ip,
        )
        self.logger.info(
            "creating 3d payment",
            extra={
                "order_id": order_id,
                "user_id": user_id,
                "plan_id": plan.plan_id,
                "amount": plan.price,
                "currency": order.currency.value,
            },
        )
        await self._create_attempt(plan, order_id, user_id, user_email)

        session = await self.three_d.initiate(card, order)
        if session.state is FlowState.CHALLENGE_ISSUED:
            await self.store.update_payment(
                order_id,
                {
                    "status": PaymentStatus.CHALLENGE_ISSUED,
                    "provider_ref": session.provider_ref,
                    "session_token": session.session_token,
                    "metadata": session.to_metadata(),
                },
            )
            status = PaymentStatus.CHALLENGE_ISSUED
        else:
            await self.store.update_payment(
                order_id,
                {
                    "status": PaymentStatus.FAILED,
                    "failure_reason": session.failure_reason,
                    "metadata": session.to_metadata(),
                },
            )
            status = PaymentStatus.FAILED
        self.logger.info("payment stored", extra={"order_id": order_id, "status": status.value})
        return PaymentStart(
            order_id=order_id,
            status=status,
            challenge_url=session.challenge_url,
            challenge_html=session.challenge_html,
            failure_reason=session.failure_reason,
        )

    async def complete_challenge(self, callback: ChallengeCallback) -> ThreeDSecureSession:
        """Finish a 3-D payment after the issuer redirects the user back.

        Only bookkeeping happens here; the subscription is activated by the
        signed webhook that follows.
        """
        attempt = await self.store.get_payment(callback.order_id)
        if attempt is None:
            raise NotFoundError(f"Payment {callback.order_id} not found")
        session = ThreeDSecureSession.from_metadata(attempt.order_id, attempt.metadata)
        if session.state is not FlowState.CHALLENGE_ISSUED:
            raise AppStateError(
                f"Cannot complete 3-D Secure payment in state {session.state.value}",
                details={"order_id": callback.order_id},
            )
        # Only one callback per order may reach TP_WMD_Pay.
        claimed = await self.store.update_payment(
            callback.order_id,
            {"status": PaymentStatus.USER_RETURNED_SUCCESS, "completion_started_at": self.clock()},
            expected={PaymentStatus.CHALLENGE_ISSUED},
        )
        if not claimed:
            self.logger.info(
                "3d callback already handled",
                extra={"order_id": callback.order_id, "status": attempt.status.value, "applied": False},
            )
            raise AppStateError(
                "3-D Secure completion already in progress or finished",
                details={"order_id": callback.order_id},
            )
        try:
            result = await self.three_d.complete(session, callback)
        except BillingError:
            # Release the claim so the bank can retry the callback.
            await self.store.update_payment(
                callback.order_id,
                {"status": PaymentStatus.CHALLENGE_ISSUED},
                expected={PaymentStatus.USER_RETURNED_SUCCESS},
            )
            raise

        if result.state is FlowState.COMPLETED:
            changes: dict[str, Any] = {
                "status": PaymentStatus.USER_RETURNED_SUCCESS,
                "provider_ref": result.provider_ref,
                "session_token": result.session_token,
                "metadata": {**result.to_metadata(), "receipt_id": result.receipt_id},
            }
        else:
            changes = {
                "status": PaymentStatus.FAILED,
                "failure_reason": result.failure_reason,
                "metadata": result.to_metadata(),
            }
        applied = await self.store.update_payment(callback.order_id, changes, expected=_OPEN_STATUSES)
        self.logger.info(
            "3d callback processed",
            extra={"order_id": callback.order_id, "outcome": result.state.value, "applied": applied},
        )
        return result

    async def record_return(self, order_id: str, user_id: str | None, *, succeeded: bool) -> bool:
        """Note that the user came back through the success or failure page."""
        if not order_id:
            raise ValidationError("Missing order id")
        if succeeded:
            changes: dict[str, Any] = {
                "status": PaymentStatus.USER_RETURNED_SUCCESS,
                "success_callback_at": self.clock(),
            }
        else:
            changes = {
                "status": PaymentStatus.USER_RETURNED_FAIL,
                "fail_callback_at": self.clock(),
            }
        applied = await self.store.update_payment(order_id, changes, expected=_OPEN_STATUSES)
        self.logger.info(
            "user returned from gateway",
            extra={
                "order_id": order_id,
                "user_id": user_id,
                "status": changes["status"].value,
                "applied": applied,
            },
        )
        return applied

    # Saved cards

    async def save_card(self, card: CardData, *, label: str = "", owner_ref: str = "") -> CardOperationResult:
        return await self.cards.save(card, label=label, owner_ref=owner_ref)

    async def list_cards(self, *, card_guid: str = "", label: str = "") -> list[StoredCard]:
        return await self.cards.list_cards(card_guid=card_guid, label=label)

    async def delete_card(self, card_guid: str) -> CardOperationResult:
        return await self.cards.delete(card_guid)

    async def pay_with_saved_card(
        self,
        card_guid: str,
        cvv: str,
        *,
        user_id: str,
        plan_id: str,
        user_email: str | None = None,
        installment: int = 1,
        security_tier: SecurityTier = SecurityTier.NON_3D,
    ) -> tuple[StoredCardPayment, PaymentStatus]:
        plan = self.plans.require(plan_id)
        order_id = new_order_id()
        order = self._order_for(
            plan,
            order_id,
            user_id,
            installment=installment,
            success_url=self._callback_url("/api/param/success", order_id=order_id, user_id=user_id),
        )
        await self._create_attempt(plan, order_id, user_id, user_email)
        result = await self.cards.pay(card_guid, cvv, order, security_tier=security_tier)
        if result.ok:
            status = PaymentStatus.CHALLENGE_ISSUED if result.redirect_url else PaymentStatus.PENDING
            changes: dict[str, Any] = {"status": status, "provider_ref": result.provider_ref}
        else:
            status = PaymentStatus.FAILED
            changes = {"status": status, "failure_reason": result.reason}
        changes["metadata"] = {"card_guid": card_guid, "security_tier": security_tier.value}
        await self.store.update_payment(order_id, changes)
        self.logger.info(
            "stored card payment recorded",
            extra={"order_id": order_id, "user_id": user_id, "plan_id": plan.plan_id, "status": status.value},
        )
        return result, status

    # Subscriptions

    async def subscription_status(self, user_id: str) -> SubscriptionView:
        record = await self.store.get_subscription(user_id)
        if record is None or record.expiry_date is None:
            return SubscriptionView(user_id=user_id, active=False, record=record)
        now = self.clock()
        remaining = (record.expiry_date - now).total_seconds() / 86400
        return SubscriptionView(
            user_id=user_id,
            active=record.is_active(now),
            record=record,
            remaining_days=math.ceil(remaining),
        )

    async def features(self, user_id: str) -> tuple[SubscriptionView, dict[str, bool]]:
        view = await self.subscription_status(user_id)
        return view, features_for(view.tier, view.active)

    async def verify_store_purchase(
        self,
        user_id: str,
        purchase_token: str,
        product_id: str,
        *,
        plan_id: str | None = None,
        platform: Platform = Platform.ANDROID,
    ) -> SubscriptionRecord:
        """Record a purchase made through an app store.

        The receipt itself is trusted as sent; the plan comes from
        ``plan_id`` or is inferred from the store product id.
        """
        if not purchase_token or not product_id:
            raise ValidationError("Missing purchaseToken or productId")
        plan = self.plans.require(plan_id) if plan_id else self.plans.infer_from_product_id(product_id)
        now = self.clock()
        record = SubscriptionRecord(
            user_id=user_id,
            plan_id=plan.plan_id,
            purchase_date=now,
            expiry_date=self.plans.expiry_for(plan.plan_id, now),
            source_platform=platform,
            source_order_id=purchase_token,
            status=SubscriptionStatus.ACTIVE,
            updated_at=now,
        )
        stored = await self.store.upsert_subscription(record)
        self.logger.info(
            "store purchase recorded",
            extra={"user_id": user_id, "plan_id": plan.plan_id, "provider": platform.value},
        )
        return stored

    async def admin_update(
        self,
        user_id: str,
        *,
        status: SubscriptionStatus,
        expiry_date: datetime,
        plan_id: str,
    ) -> SubscriptionRecord:
        self.plans.require(plan_id)
        record = SubscriptionRecord(
            user_id=user_id,
            plan_id=plan_id,
            expiry_date=expiry_date,
            status=status,
            source_platform=Platform.ADMIN,
            updated_at=self.clock(),
        )
        stored = await self.store.upsert_subscription(record)
        self.logger.info(
            "subscription updated by admin",
            extra={"user_id": user_id, "plan_id": plan_id, "status": status.value},
        )
        return stored

    # Lemon Squeezy

    async def create_checkout(
        self, user_id: str, plan_id: str, *, success_url: str, user_email: str | None = None
    ) -> str:
        plan = self.plans.require(plan_id)
        return await self.lemonsqueezy.create_checkout(
            plan, user_id=user_id, success_url=success_url, user_email=user_email
        )

    async def apply_lemonsqueezy_event(self, event: LemonSqueezyEvent) -> bool:
        """Apply a verified Lemon Squeezy webhook; False when ignored or repeated."""
        if event.name not in HANDLED_EVENTS:
            self.logger.info("unhandled lemonsqueezy event", extra={"event": event.name, "provider": "lemonsqueezy"})
            return False
        if not event.user_id:
            self.logger.info("lemonsqueezy event without user", extra={"event": event.name})
            return False
        plan = self.plans.require(event.plan_id or "") if event.name == "order_created" else None
        if not await self.store.record_webhook(event.idempotency_key, event.resource_id, event.raw):
            self.logger.info("duplicate lemonsqueezy event ignored", extra={"event": event.name, "applied": False})
            return False

        now = self.clock()
        if plan is not None:
            record = SubscriptionRecord(
                user_id=event.user_id,
                plan_id=plan.plan_id,
                purchase_date=now,
                expiry_date=self.plans.expiry_for(plan.plan_id, now),
                source_platform=Platform.LEMONSQUEEZY,
                source_order_id=event.resource_id,
                status=SubscriptionStatus.ACTIVE,
                updated_at=now,
            )
        elif event.name == "subscription_cancelled":
            record = SubscriptionRecord(user_id=event.user_id, status=SubscriptionStatus.CANCELLED, updated_at=now)
        else:
            status = SubscriptionStatus.ACTIVE
            if event.status in {"cancelled", "expired"}:
                status = SubscriptionStatus(event.status)
            record = SubscriptionRecord(
                user_id=event.user_id,
                status=status,
                expiry_date=event.renews_at,
                updated_at=now,
            )
        await self.store.upsert_subscription(record)
        self.logger.info(
            "lemonsqueezy event applied",
            extra={"event": event.name, "user_id": event.user_id, "provider": "lemonsqueezy", "applied": True},
        )
        return True
