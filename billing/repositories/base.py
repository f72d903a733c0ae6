from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable

from billing.domain.models import PaymentAttempt, SubscriptionRecord
from billing.domain.statuses import PaymentStatus, SubscriptionStatus


class DocumentStore(ABC):
    """Async store for payment attempts, subscriptions and the webhook inbox.

    The conditional methods (``update_payment`` with ``expected``,
    ``apply_success``, ``apply_status``) are the only serialization points
    between concurrent requests touching the same order.
    """

    @abstractmethod
    async def create_payment(self, attempt: PaymentAttempt) -> None:
        """Insert a new attempt; raise PersistenceError if the order id exists."""

    @abstractmethod
    async def get_payment(self, order_id: str) -> PaymentAttempt | None:
        ...

    @abstractmethod
    async def update_payment(
        self,
        order_id: str,
        changes: dict[str, Any],
        *,
        expected: Iterable[PaymentStatus] | None = None,
    ) -> bool:
        """Merge ``changes`` into the attempt document.

        With ``expected`` the write happens only if the current status is one
        of them. Returns whether the write happened; raises NotFoundError when
        the order does not exist.
        """

    @abstractmethod
    async def apply_success(
        self,
        order_id: str,
        subscription: SubscriptionRecord,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """Atomically mark the attempt ``success`` and merge the subscription.

        Stamps ``succeeded_at`` on the attempt. Returns False without writing
        anything when the attempt is ``success`` or carries that marker, so an
        order moves into ``success`` at most once even after a later cancel.
        """

    @abstractmethod
    async def apply_status(
        self,
        order_id: str,
        to_status: PaymentStatus,
        *,
        allowed_from: Iterable[PaymentStatus],
        subscription_status: SubscriptionStatus | None = None,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """Atomically move the attempt to ``to_status`` if its status allows it.

        When ``subscription_status`` is given, the owner's subscription status
        is updated too, but only if that subscription came from this order.
        Expiry dates are never touched.
        """

    @abstractmethod
    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        ...

    @abstractmethod
    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Merge the set fields of ``record`` into the stored subscription."""

    @abstractmethod
    async def record_webhook(self, key: str, order_id: str, payload: dict[str, Any]) -> bool:
        """Append to the webhook inbox; False if ``key`` was already recorded."""

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...
