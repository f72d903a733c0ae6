from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

from billing.domain.models import PaymentAttempt, SubscriptionRecord
from billing.domain.statuses import PaymentStatus, SubscriptionStatus
from billing.errors import NotFoundError, PersistenceError

from .base import DocumentStore


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in process memory.

    Mutations never await while holding the lock, so each conditional write
    is atomic for every coroutine and thread sharing the instance.
    """

    def __init__(self) -> None:
        self.payments: Dict[str, dict[str, Any]] = {}
        self.users: Dict[str, dict[str, Any]] = {}
        self.webhooks: Dict[str, dict[str, Any]] = {}
        self.writes = 0
        self._lock = threading.RLock()

    async def create_payment(self, attempt: PaymentAttempt) -> None:
        with self._lock:
            if attempt.order_id in self.payments:
                raise PersistenceError(f"Payment {attempt.order_id} already exists")
            doc = attempt.to_document()
            doc["created_at"] = doc["created_at"] or _now()
            doc["updated_at"] = doc["updated_at"] or doc["created_at"]
            self.payments[attempt.order_id] = doc
            self.writes += 1

    async def get_payment(self, order_id: str) -> PaymentAttempt | None:
        with self._lock:
            doc = self.payments.get(order_id)
            return PaymentAttempt.from_document(copy.deepcopy(doc)) if doc else None

    async def update_payment(
        self,
        order_id: str,
        changes: dict[str, Any],
        *,
        expected: Iterable[PaymentStatus] | None = None,
    ) -> bool:
        with self._lock:
            doc = self._payment_doc(order_id)
            if expected is not None and PaymentStatus(doc["status"]) not in set(expected):
                return False
            self._merge_payment(doc, changes)
            return True

    async def apply_success(
        self,
        order_id: str,
        subscription: SubscriptionRecord,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            doc = self._payment_doc(order_id)
            if doc["status"] == PaymentStatus.SUCCESS.value or doc.get("succeeded_at"):
                return False
            self._merge_payment(
                doc, {"succeeded_at": _now(), **(changes or {}), "status": PaymentStatus.SUCCESS}
            )
            self._merge_subscription(subscription)
            return True

    async def apply_status(
        self,
        order_id: str,
        to_status: PaymentStatus,
        *,
        allowed_from: Iterable[PaymentStatus],
        subscription_status: SubscriptionStatus | None = None,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            doc = self._payment_doc(order_id)
            if PaymentStatus(doc["status"]) not in set(allowed_from):
                return False
            self._merge_payment(doc, {**(changes or {}), "status": to_status})
            if subscription_status is not None:
                current = self.users.get(doc["user_id"])
                if current and current.get("source_order_id") == order_id:
                    current["status"] = subscription_status.value
                    current["updated_at"] = _now()
                    self.writes += 1
            return True

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        with self._lock:
            doc = self.users.get(user_id)
            return SubscriptionRecord.from_document(dict(doc)) if doc else None

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with self._lock:
            return SubscriptionRecord.from_document(dict(self._merge_subscription(record)))

    async def record_webhook(self, key: str, order_id: str, payload: dict[str, Any]) -> bool:
        with self._lock:
            if key in self.webhooks:
                return False
            self.webhooks[key] = {"order_id": order_id, "payload": dict(payload), "received_at": _now()}
            return True

    async def count_by_status(self) -> dict[str, int]:
        with self._lock:
            counts: dict[str, int] = {}
            for doc in self.payments.values():
                counts[doc["status"]] = counts.get(doc["status"], 0) + 1
            return counts

    def _payment_doc(self, order_id: str) -> dict[str, Any]:
        doc = self.payments.get(order_id)
        if doc is None:
            raise NotFoundError(f"Payment {order_id} not found")
        return doc

    def _merge_payment(self, doc: dict[str, Any], changes: dict[str, Any]) -> None:
        for key, value in changes.items():
            if key == "metadata":
                doc.setdefault("metadata", {}).update(value or {})
            elif isinstance(value, PaymentStatus):
                doc[key] = value.value
            elif isinstance(value, datetime):
                doc[key] = value.isoformat()
            else:
                doc[key] = value
        doc["updated_at"] = _now()
        self.writes += 1

    def _merge_subscription(self, record: SubscriptionRecord) -> dict[str, Any]:
        current = self.users.setdefault(record.user_id, {"user_id": record.user_id})
        current.update(record.to_document())
        current.setdefault("updated_at", _now())
        self.writes += 1
        return current
