from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Status of a payment attempt."""

    PENDING = "pending"
    CHALLENGE_ISSUED = "challenge_issued"
    USER_RETURNED_SUCCESS = "user_returned_success"
    USER_RETURNED_FAIL = "user_returned_fail"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_final(self) -> bool:
        return self in _FINAL_PAYMENT_STATUSES


_FINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED}
)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EventStatus(str, Enum):
    """Semantic status of an inbound gateway notification."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def from_provider(cls, raw: object) -> "EventStatus":
        """Map the loosely-typed status a gateway posts back to our values.

        Param reports ``1`` for an approved transaction; anything it does not
        explicitly mark as cancelled or refunded counts as a failure.
        """
        value = str(raw if raw is not None else "").strip().lower()
        if value in {"1", "success", "succeeded", "approved", "basarili"}:
            return cls.SUCCESS
        if value in {"cancelled", "canceled", "iptal"}:
            return cls.CANCELLED
        if value in {"refunded", "iade"}:
            return cls.REFUNDED
        return cls.FAILED

    def payment_status(self) -> PaymentStatus:
        return {
            EventStatus.SUCCESS: PaymentStatus.SUCCESS,
            EventStatus.FAILED: PaymentStatus.FAILED,
            EventStatus.CANCELLED: PaymentStatus.CANCELLED,
            EventStatus.REFUNDED: PaymentStatus.REFUNDED,
        }[self]
