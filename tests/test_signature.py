from __future__ import annotations

import base64
import hashlib
import pathlib
import sys
from decimal import Decimal

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.domain.enums import HashScheme
from billing.domain.models import GatewayCredentials
from billing.errors import ValidationError
from billing.gateway.signature import (
    compute_hash,
    hashes_match,
    normalize_amount,
    notification_hash_fields,
    payment_hash_fields,
    sign,
)

CREDS = GatewayCredentials(
    client_code="10738",
    client_username="Test",
    client_password="Test",
    terminal_id="10738",
    secret_guid="0c13d406-873b-403b-9c09-a5766840d98c",
    endpoint_url="https://example.test/service.asmx",
)


def test_hash_is_base64_of_raw_sha256_digest() -> None:
    assert compute_hash([("a", "abc")]) == "ungWv48Bz+pBQUDeXa4iI7ADYaOWF3qctBD/YfIAFa0="


def test_hash_is_deterministic() -> None:
    fields = [("CLIENT_CODE", "10738"), ("Siparis_ID", "TRX1"), ("Toplam_Tutar", "1.00")]
    assert compute_hash(fields) == compute_hash(list(fields))


def test_hash_depends_on_field_order() -> None:
    fields = [("CLIENT_CODE", "10738"), ("Siparis_ID", "TRX1")]
    assert compute_hash(fields) != compute_hash(list(reversed(fields)))


def test_fields_are_concatenated_without_separator() -> None:
    expected = base64.b64encode(hashlib.sha256(b"10738TRX1").digest()).decode()
    assert compute_hash([("x", "10738"), ("y", "TRX1")]) == expected


def test_hmac_scheme_requires_secret() -> None:
    with pytest.raises(ValidationError):
        compute_hash([("a", "b")], scheme=HashScheme.HMAC_SHA256_B64)
    keyed = compute_hash([("a", "b")], scheme=HashScheme.HMAC_SHA256_B64, secret="s3cret")
    assert keyed != compute_hash([("a", "b")])


def test_normalize_amount() -> None:
    assert normalize_amount("1,50") == "1.50"
    assert normalize_amount(Decimal("20.00")) == "20.00"
    assert normalize_amount(7.5) == "7.5"
    with pytest.raises(ValidationError):
        normalize_amount("1.234,50")


def test_payment_hash_field_order() -> None:
    fields = payment_hash_fields(
        CREDS,
        installment=1,
        item_amount="1,00",
        total_amount="1,00",
        order_id="TRX1",
        failure_url="https://f",
        success_url="https://s",
    )
    assert [name for name, _ in fields] == [
        "CLIENT_CODE",
        "GUID",
        "Taksit",
        "Islem_Tutar",
        "Toplam_Tutar",
        "Siparis_ID",
        "Hata_URL",
        "Basarili_URL",
    ]
    assert fields[3] == ("Islem_Tutar", "1.00")

    without_urls = payment_hash_fields(CREDS, installment=1, item_amount="1", total_amount="1", order_id="TRX1")
    assert [name for name, _ in without_urls][-1] == "Siparis_ID"


def test_sign_keeps_request_fields_in_order() -> None:
    signed = sign([("b", 2), ("a", 1)], [("x", "1")])
    assert list(signed.as_dict()) == ["b", "a", "Islem_Hash"]
    assert signed.integrity_hash == compute_hash([("x", "1")])


def test_notification_hash_matches_only_same_amount() -> None:
    good = compute_hash(notification_hash_fields(CREDS, order_id="TRX1", status="1", total_amount="9.00"))
    tampered = compute_hash(notification_hash_fields(CREDS, order_id="TRX1", status="1", total_amount="1.00"))
    assert hashes_match(good, good)
    assert not hashes_match(good, tampered)
    assert not hashes_match(good, None)
