from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from billing.domain.enums import Platform
from billing.domain.models import SubscriptionRecord, VerifiedEvent
from billing.domain.plans import PlanCatalog
from billing.domain.statuses import EventStatus, PaymentStatus, SubscriptionStatus
from billing.errors import NotFoundError
from billing.repositories.base import DocumentStore

logger = logging.getLogger(__name__)

# A late failure notification must not undo an approved payment.
_FAILABLE = frozenset(
    {
        PaymentStatus.PENDING,
        PaymentStatus.CHALLENGE_ISSUED,
        PaymentStatus.USER_RETURNED_SUCCESS,
        PaymentStatus.USER_RETURNED_FAIL,
    }
)
_REVERSIBLE = _FAILABLE | {PaymentStatus.SUCCESS}

_TRANSITIONS: dict[EventStatus, tuple[frozenset[PaymentStatus], SubscriptionStatus | None]] = {
    EventStatus.FAILED: (_FAILABLE, None),
    EventStatus.CANCELLED: (_REVERSIBLE, SubscriptionStatus.CANCELLED),
    EventStatus.REFUNDED: (_REVERSIBLE | {PaymentStatus.CANCELLED}, SubscriptionStatus.CANCELLED),
}


@dataclass(frozen=True)
class ReconcileResult:
    applied: bool
    order_id: str
    status: PaymentStatus
    expiry_date: datetime | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionReconciler:
    """Applies verified gateway events to payment and subscription records.

    Webhooks are delivered at least once; the store's conditional writes make
    a repeated event a no-op that reports ``applied=False``.
    """

    def __init__(
        self,
        store: DocumentStore,
        plans: PlanCatalog,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.plans = plans
        self.clock = clock

    async def reconcile(self, event: VerifiedEvent) -> ReconcileResult:
        attempt = await self.store.get_payment(event.order_id)
        if attempt is None:
            logger.info("webhook for unknown order", extra={"order_id": event.order_id, "event": event.event_type})
            raise NotFoundError(f"Payment {event.order_id} not found")

        await self.store.record_webhook(event.idempotency_key, event.order_id, dict(event.raw))

        if event.status is EventStatus.SUCCESS:
            return await self._apply_success(event, attempt.user_id, attempt.plan_id, attempt.status)
        return await self._apply_other(event, attempt.status)

    async def _apply_success(
        self, event: VerifiedEvent, user_id: str, plan_id: str, current: PaymentStatus
    ) -> ReconcileResult:
        if current is PaymentStatus.SUCCESS:
            logger.info(
                "duplicate success event ignored",
                extra={"order_id": event.order_id, "applied": False},
            )
            return ReconcileResult(applied=False, order_id=event.order_id, status=current)

        purchase_date = self.clock()
        expiry_date = self.plans.expiry_for(plan_id, purchase_date)
        subscription = SubscriptionRecord(
            user_id=user_id,
            plan_id=plan_id,
            purchase_date=purchase_date,
            expiry_date=expiry_date,
            source_platform=Platform.PARAM,
            source_order_id=event.order_id,
            status=SubscriptionStatus.ACTIVE,
            updated_at=purchase_date,
        )
        changes: dict[str, object] = {
            "verified_at": purchase_date,
            "succeeded_at": purchase_date,
            "failure_reason": None,
        }
        if event.provider_ref:
            changes["provider_ref"] = event.provider_ref
        applied = await self.store.apply_success(event.order_id, subscription, changes)
        if not applied:
            # Already succeeded once: a concurrent duplicate, or a redelivery after cancel.
            latest = await self.store.get_payment(event.order_id)
            status = latest.status if latest else current
            logger.info(
                "duplicate success event ignored",
                extra={"order_id": event.order_id, "applied": False, "status": status.value},
            )
            return ReconcileResult(applied=False, order_id=event.order_id, status=status)
        logger.info(
            "subscription activated",
            extra={
                "order_id": event.order_id,
                "user_id": user_id,
                "plan_id": plan_id,
                "applied": True,
                "status": SubscriptionStatus.ACTIVE.value,
            },
        )
        return ReconcileResult(
            applied=True,
            order_id=event.order_id,
            status=PaymentStatus.SUCCESS,
            expiry_date=expiry_date,
        )

    async def _apply_other(self, event: VerifiedEvent, current: PaymentStatus) -> ReconcileResult:
        to_status = event.status.payment_status()
        allowed_from, subscription_status = _TRANSITIONS[event.status]
        applied = await self.store.apply_status(
            event.order_id,
            to_status,
            allowed_from=allowed_from - {to_status},
            subscription_status=subscription_status,
            changes={"webhook_status": str(event.raw.get("status", event.event_type))},
        )
        logger.info(
            "payment status event processed",
            extra={
                "order_id": event.order_id,
                "status": to_status.value if applied else current.value,
                "applied": applied,
                "event": event.event_type,
            },
        )
        return ReconcileResult(applied=applied, order_id=event.order_id, status=to_status if applied else current)
