from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, TypeVar

import psycopg2
from psycopg2.extras import Json

from billing.db.client import get_conn
from billing.domain.models import PaymentAttempt, SubscriptionRecord
from billing.domain.statuses import PaymentStatus, SubscriptionStatus
from billing.errors import NotFoundError, PersistenceError

from .base import DocumentStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS payment_attempt (
    order_id    TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    status      TEXT NOT NULL,
    doc         JSONB NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS user_subscription (
    user_id     TEXT PRIMARY KEY,
    doc         JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS webhook_inbox (
    idempotency_key TEXT PRIMARY KEY,
    order_id        TEXT NOT NULL,
    payload         JSONB NOT NULL,
    received_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def _jsonable(changes: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, PaymentStatus):
            out[key] = value.value
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def _db_call(fn: Callable[..., T]) -> Callable[..., Any]:
    """Run a blocking psycopg2 method in a worker thread; map driver errors."""

    @functools.wraps(fn)
    async def wrapper(self: "PgDocumentStore", *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, self, *args, **kwargs)
        except psycopg2.Error as exc:
            logger.info("db operation failed", extra={"event": f"{fn.__name__}: {exc}"})
            raise PersistenceError("Storage operation failed", details={"operation": fn.__name__}) from exc

    return wrapper


class PgDocumentStore(DocumentStore):
    """PostgreSQL-backed document store using raw psycopg2 and JSONB."""

    @_db_call
    def ensure_schema(self) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)

    @_db_call
    def create_payment(self, attempt: PaymentAttempt) -> None:
        doc = attempt.to_document()
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO payment_attempt (order_id, user_id, status, doc, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, NOW(), NOW())
                    ON CONFLICT (order_id) DO NOTHING
                    RETURNING order_id
                    """,
                    (attempt.order_id, attempt.user_id, attempt.status.value, Json(doc)),
                )
                if cur.fetchone() is None:
                    raise PersistenceError(f"Payment {attempt.order_id} already exists")

    @_db_call
    def get_payment(self, order_id: str) -> PaymentAttempt | None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT doc, status, created_at, updated_at FROM payment_attempt WHERE order_id=%s",
                    (order_id,),
                )
                row = cur.fetchone()
        if row is None:
            return None
        doc = dict(row[0])
        doc["status"] = row[1]
        doc["created_at"] = row[2]
        doc["updated_at"] = row[3]
        return PaymentAttempt.from_document(doc)

    @_db_call
    def update_payment(
        self,
        order_id: str,
        changes: dict[str, Any],
        *,
        expected: Iterable[PaymentStatus] | None = None,
    ) -> bool:
        data = _jsonable(changes)
        metadata = data.pop("metadata", None) or {}
        new_status = data.get("status")
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status FROM payment_attempt WHERE order_id=%s FOR UPDATE", (order_id,))
                row = cur.fetchone()
                if row is None:
                    raise NotFoundError(f"Payment {order_id} not found")
                if expected is not None and row[0] not in {s.value for s in expected}:
                    return False
                cur.execute(
                    """
                    UPDATE payment_attempt
                       SET doc = jsonb_set(doc || %s::jsonb, '{metadata}',
                                           COALESCE(doc->'metadata', '{}'::jsonb) || %s::jsonb),
                           status = COALESCE(%s, status),
                           updated_at = NOW()
                     WHERE order_id = %s
                    """,
                    (Json(data), Json(metadata), new_status, order_id),
                )
        return True

    @_db_call
    def apply_success(
        self,
        order_id: str,
        subscription: SubscriptionRecord,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        data = _jsonable(
            {"succeeded_at": datetime.now(timezone.utc), **(changes or {}), "status": PaymentStatus.SUCCESS}
        )
        with get_conn() as conn:
            with conn.cursor() as cur:
                # Row lock: a concurrent duplicate waits here, then sees the marker.
                cur.execute(
                    """
                    UPDATE payment_attempt
                       SET doc = doc || %s::jsonb,
                           status = 'success',
                           updated_at = NOW()
                     WHERE order_id = %s
                       AND status <> 'success'
                       AND doc->>'succeeded_at' IS NULL
                     RETURNING order_id
                    """,
                    (Json(data), order_id),
                )
                if cur.fetchone() is None:
                    cur.execute("SELECT 1 FROM payment_attempt WHERE order_id=%s", (order_id,))
                    if cur.fetchone() is None:
                        raise NotFoundError(f"Payment {order_id} not found")
                    return False
                self._merge_subscription(cur, subscription)
        return True

    @_db_call
    def apply_status(
        self,
        order_id: str,
        to_status: PaymentStatus,
        *,
        allowed_from: Iterable[PaymentStatus],
        subscription_status: SubscriptionStatus | None = None,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        data = _jsonable({**(changes or {}), "status": to_status})
        allowed = [s.value for s in allowed_from]
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE payment_attempt
                       SET doc = doc || %s::jsonb,
                           status = %s,
                           updated_at = NOW()
                     WHERE order_id = %s AND status = ANY(%s)
                     RETURNING user_id
                    """,
                    (Json(data), to_status.value, order_id, allowed),
                )
                row = cur.fetchone()
                if row is None:
                    cur.execute("SELECT 1 FROM payment_attempt WHERE order_id=%s", (order_id,))
                    if cur.fetchone() is None:
                        raise NotFoundError(f"Payment {order_id} not found")
                    return False
                if subscription_status is not None:
                    cur.execute(
                        """
                        UPDATE user_subscription
                           SET doc = doc || jsonb_build_object('status', %s::text, 'updated_at', NOW()::text),
                               updated_at = NOW()
                         WHERE user_id = %s AND doc->>'source_order_id' = %s
                        """,
                        (subscription_status.value, row[0], order_id),
                    )
        return True

    @_db_call
    def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT doc FROM user_subscription WHERE user_id=%s", (user_id,))
                row = cur.fetchone()
        return SubscriptionRecord.from_document(dict(row[0])) if row else None

    @_db_call
    def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with get_conn() as conn:
            with conn.cursor() as cur:
                doc = self._merge_subscription(cur, record)
        return SubscriptionRecord.from_document(doc)

    @_db_call
    def record_webhook(self, key: str, order_id: str, payload: dict[str, Any]) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_inbox (idempotency_key, order_id, payload, received_at)
                    VALUES (%s, %s, %s, NOW())
                    ON CONFLICT (idempotency_key) DO NOTHING
                    RETURNING idempotency_key
                    """,
                    (key, order_id, Json(payload)),
                )
                return cur.fetchone() is not None

    @_db_call
    def count_by_status(self) -> dict[str, int]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status, COUNT(*) FROM payment_attempt GROUP BY status")
                return {str(status): int(count) for status, count in (cur.fetchall() or [])}

    @staticmethod
    def _merge_subscription(cur: Any, record: SubscriptionRecord) -> dict[str, Any]:
        cur.execute(
            """
            INSERT INTO user_subscription (user_id, doc, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (user_id) DO UPDATE
                SET doc = user_subscription.doc || EXCLUDED.doc,
                    updated_at = NOW()
            RETURNING doc
            """,
            (record.user_id, Json(record.to_document())),
        )
        row = cur.fetchone()
        return dict(row[0]) if row else record.to_document()
