from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from .enums import Currency, GatewayMode, Platform
from .statuses import EventStatus, PaymentStatus, SubscriptionStatus


@dataclass(frozen=True)
class GatewayCredentials:
    """Resolved Param credentials for one deployment mode."""

    client_code: str
    client_username: str
    client_password: str
    terminal_id: str
    secret_guid: str
    endpoint_url: str
    mode: GatewayMode = GatewayMode.TEST

    def auth_block(self) -> dict[str, str]:
        """The ``G`` element every Param request carries."""
        return {
            "CLIENT_CODE": self.client_code,
            "CLIENT_USERNAME": self.client_username,
            "CLIENT_PASSWORD": self.client_password,
        }

    def __repr__(self) -> str:
        return (
            f"GatewayCredentials(client_code={self.client_code!r}, "
            f"terminal_id={self.terminal_id!r}, mode={self.mode.value!r})"
        )


@dataclass(frozen=True)
class SignedRequest:
    """Ordered request fields together with their integrity hash."""

    fields: tuple[tuple[str, Any], ...]
    integrity_hash: str

    def as_dict(self, hash_field: str = "Islem_Hash") -> dict[str, Any]:
        data = dict(self.fields)
        data[hash_field] = self.integrity_hash
        return data


@dataclass
class PaymentAttempt:
    """A single payment initiation; kept forever as audit trail."""

    order_id: str
    user_id: str
    plan_id: str
    amount: Decimal
    currency: Currency = Currency.TRY
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime | None = None
    updated_at: datetime | None = None
    user_email: str | None = None
    provider_ref: str | None = None
    session_token: str | None = None
    failure_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["amount"] = format(self.amount, "f")
        doc["currency"] = self.currency.value
        doc["status"] = self.status.value
        doc["created_at"] = self.created_at.isoformat() if self.created_at else None
        doc["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "PaymentAttempt":
        return cls(
            order_id=str(doc["order_id"]),
            user_id=str(doc["user_id"]),
            plan_id=str(doc["plan_id"]),
            amount=Decimal(str(doc["amount"])),
            currency=Currency(doc.get("currency") or Currency.TRY.value),
            status=PaymentStatus(doc.get("status") or PaymentStatus.PENDING.value),
            created_at=_parse_dt(doc.get("created_at")),
            updated_at=_parse_dt(doc.get("updated_at")),
            user_email=doc.get("user_email"),
            provider_ref=doc.get("provider_ref"),
            session_token=doc.get("session_token"),
            failure_reason=doc.get("failure_reason"),
            metadata=dict(doc.get("metadata") or {}),
        )


@dataclass
class SubscriptionRecord:
    """Current subscription of a user; merged on every write."""

    user_id: str
    plan_id: str | None = None
    purchase_date: datetime | None = None
    expiry_date: datetime | None = None
    source_platform: Platform | None = None
    source_order_id: str | None = None
    status: SubscriptionStatus | None = None
    updated_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """Only the fields that are set, so a merge never erases data."""
        doc: dict[str, Any] = {"user_id": self.user_id}
        if self.plan_id is not None:
            doc["plan_id"] = self.plan_id
        if self.purchase_date is not None:
            doc["purchase_date"] = self.purchase_date.isoformat()
        if self.expiry_date is not None:
            doc["expiry_date"] = self.expiry_date.isoformat()
        if self.source_platform is not None:
            doc["source_platform"] = self.source_platform.value
        if self.source_order_id is not None:
            doc["source_order_id"] = self.source_order_id
        if self.status is not None:
            doc["status"] = self.status.value
        if self.updated_at is not None:
            doc["updated_at"] = self.updated_at.isoformat()
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "SubscriptionRecord":
        platform = doc.get("source_platform")
        status = doc.get("status")
        return cls(
            user_id=str(doc["user_id"]),
            plan_id=doc.get("plan_id"),
            purchase_date=_parse_dt(doc.get("purchase_date")),
            expiry_date=_parse_dt(doc.get("expiry_date")),
            source_platform=Platform(platform) if platform else None,
            source_order_id=doc.get("source_order_id"),
            status=SubscriptionStatus(status) if status else None,
            updated_at=_parse_dt(doc.get("updated_at")),
        )

    def is_active(self, now: datetime) -> bool:
        if self.status is not SubscriptionStatus.ACTIVE or self.expiry_date is None:
            return False
        return now < self.expiry_date


@dataclass(frozen=True)
class VerifiedEvent:
    """A gateway notification whose signature has already been checked."""

    order_id: str
    status: EventStatus
    total_amount: str | None = None
    provider_ref: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.status.value

    @property
    def idempotency_key(self) -> str:
        return f"{self.order_id}:{self.event_type}"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
