from __future__ import annotations

import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.gateway.envelope import build_envelope, escape_text, serialize_fields
from billing.gateway.parser import Success, parse

NS = "https://turkpos.com.tr/"


def test_escape_reserved_characters() -> None:
    assert escape_text("O'Brien & <Sons> \"Ltd\"") == "O&apos;Brien &amp; &lt;Sons&gt; &quot;Ltd&quot;"
    assert escape_text(None) == ""


def test_nested_mapping_serialized_in_order() -> None:
    xml = serialize_fields({"G": {"CLIENT_CODE": "1", "CLIENT_USERNAME": "u"}, "Siparis_ID": "TRX1"})
    assert xml == "<G><CLIENT_CODE>1</CLIENT_CODE><CLIENT_USERNAME>u</CLIENT_USERNAME></G><Siparis_ID>TRX1</Siparis_ID>"


def test_envelope_shape() -> None:
    envelope = build_envelope("TP_WMD_UCD", {"Siparis_ID": "TRX1"}, NS)
    assert envelope.startswith('<?xml version="1.0" encoding="utf-8"?>')
    assert "<soap:Body><TP_WMD_UCD xmlns=\"https://turkpos.com.tr/\"><Siparis_ID>TRX1</Siparis_ID></TP_WMD_UCD></soap:Body>" in envelope


def test_escaped_text_survives_parse() -> None:
    holder = "O'Brien & <Sons>"
    envelope = build_envelope("KS_Kart_Ekle", {"KK_Sahibi": holder}, NS)
    result = parse(envelope, "KS_Kart_Ekle")
    assert isinstance(result, Success)
    assert result.get("KK_Sahibi") == holder


def test_field_mapping_round_trips_through_generic_scan() -> None:
    fields = {
        "KK_Sahibi": "O'Brien & <Sons>",
        "Siparis_Aciklama": '  "Premium" plan > basic  ',
        "Islem_Tutar": "3.00",
        "Data1": "",
        "Ref_URL": "https://app.test/return?a=1&b=2",
    }
    envelope = build_envelope("TP_Islem_Odeme", fields, NS)
    result = parse(envelope, "TP_Islem_Odeme")
    assert isinstance(result, Success)
    assert result.fields == fields
