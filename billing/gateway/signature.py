"""Integrity hashes for Param requests and notifications.

Every operation defines its own concatenation order. Callers pass fields as an
ordered sequence and the functions here never sort or otherwise reorder them.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from decimal import Decimal
from typing import Any, Iterable, Sequence

from billing.domain.enums import HashScheme
from billing.domain.models import GatewayCredentials, SignedRequest
from billing.errors import ValidationError

OrderedFields = Sequence[tuple[str, Any]]


def normalize_amount(value: Any) -> str:
    """Render an amount with a ``.`` decimal separator.

    Strings typed in a locale that uses ``,`` (``"1,50"``) are accepted;
    ``"1.234,50"`` style thousands grouping is not.
    """
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (int, float)):
        return format(Decimal(str(value)), "f")
    text = str(value).strip()
    if "," in text and "." in text:
        raise ValidationError(f"Ambiguous amount format: {text}")
    return text.replace(",", ".")


def concatenate(fields: Iterable[tuple[str, Any]]) -> str:
    return "".join("" if value is None else str(value) for _, value in fields)


def compute_hash(
    fields: OrderedFields,
    *,
    scheme: HashScheme = HashScheme.SHA256_B64,
    secret: str | None = None,
) -> str:
    """Hash ``fields`` in the given order and return Base64 text."""
    payload = concatenate(fields).encode("utf-8")
    if scheme is HashScheme.SHA256_B64:
        digest = hashlib.sha256(payload).digest()
    elif scheme is HashScheme.HMAC_SHA256_B64:
        if not secret:
            raise ValidationError("HMAC hashing requires a merchant secret")
        digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    else:
        raise ValidationError(f"Unsupported hash scheme {scheme}")
    return base64.b64encode(digest).decode("ascii")


def hashes_match(expected: str, provided: str | None) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def hmac_hex_digest(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA-256 over a raw body, as sent in JSON webhook headers."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def payment_hash_fields(
    credentials: GatewayCredentials,
    *,
    installment: Any,
    item_amount: Any,
    total_amount: Any,
    order_id: str,
    failure_url: str | None = None,
    success_url: str | None = None,
) -> list[tuple[str, str]]:
    """Hash input for card payments (3-D and stored-card).

    Order: client code, GUID, installment, item amount, total amount, order id,
    then the failure and success URLs when the operation redirects.
    """
    fields = [
        ("CLIENT_CODE", credentials.client_code),
        ("GUID", credentials.secret_guid),
        ("Taksit", str(installment)),
        ("Islem_Tutar", normalize_amount(item_amount)),
        ("Toplam_Tutar", normalize_amount(total_amount)),
        ("Siparis_ID", order_id),
    ]
    if failure_url is not None or success_url is not None:
        fields.append(("Hata_URL", failure_url or ""))
        fields.append(("Basarili_URL", success_url or ""))
    return fields


def notification_hash_fields(
    credentials: GatewayCredentials,
    *,
    order_id: str,
    status: str,
    total_amount: Any,
) -> list[tuple[str, str]]:
    """Hash input for inbound payment notifications: order, secret, status, amount."""
    return [
        ("order_id", order_id),
        ("GUID", credentials.secret_guid),
        ("status", status),
        ("total_amount", normalize_amount(total_amount)),
    ]


def sign(fields: OrderedFields, hash_fields: OrderedFields) -> SignedRequest:
    """Attach the SHA256/Base64 hash of ``hash_fields`` to a request."""
    return SignedRequest(
        fields=tuple((name, value) for name, value in fields),
        integrity_hash=compute_hash(hash_fields),
    )
