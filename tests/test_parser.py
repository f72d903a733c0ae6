from __future__ import annotations

import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from billing.gateway.parser import Fault, Success, Unparsed, extract_records, parse

ENVELOPE = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
    "<soap:Body>{body}</soap:Body></soap:Envelope>"
)


def test_result_element_is_preferred() -> None:
    raw = ENVELOPE.format(
        body=(
            '<TP_WMD_UCDResponse xmlns="https://turkpos.com.tr/">'
            "<TP_WMD_UCDResult><Sonuc>1</Sonuc><Sonuc_Str>Islem Basarili</Sonuc_Str>"
            "<UCD_URL>https://bank/3d?a=1&amp;b=2</UCD_URL></TP_WMD_UCDResult>"
            "</TP_WMD_UCDResponse>"
        )
    )
    result = parse(raw, "TP_WMD_UCD")
    assert isinstance(result, Success)
    assert result.outcome == "success"
    assert result.get("Sonuc") == "1"
    assert result.get("UCD_URL") == "https://bank/3d?a=1&b=2"


def test_fault_takes_precedence() -> None:
    raw = ENVELOPE.format(
        body=(
            "<soap:Fault><faultcode>soap:Client</faultcode>"
            "<faultstring>Server did not recognize the value of HTTP Header SOAPAction</faultstring>"
            "</soap:Fault><Result><Sonuc>1</Sonuc></Result>"
        )
    )
    result = parse(raw, "TP_WMD_UCD")
    assert isinstance(result, Fault)
    assert result.code == "soap:Client"
    assert "SOAPAction" in result.message


def test_provider_result_tag_fallback() -> None:
    raw = ENVELOPE.format(body="<Other><DT_Bilgi><Sonuc>-1</Sonuc><Sonuc_Str>Hata</Sonuc_Str></DT_Bilgi></Other>")
    result = parse(raw, "KS_Tahsilat")
    assert isinstance(result, Success)
    assert result.get("Sonuc") == "-1"


def test_generic_scan_when_no_known_wrapper() -> None:
    raw = ENVELOPE.format(body="<Anything><Sonuc>1</Sonuc></Anything>")
    result = parse(raw, "KS_Kart_Sil")
    assert isinstance(result, Success)
    assert result.fields == {"Sonuc": "1"}


def test_unreadable_responses_are_unparsed() -> None:
    assert isinstance(parse("", "TP_WMD_UCD"), Unparsed)
    assert isinstance(parse("Service Unavailable", "TP_WMD_UCD"), Unparsed)


def test_extract_records() -> None:
    body = (
        "<Temp><KS_GUID>g1</KS_GUID><Kart_Adi>main</Kart_Adi></Temp>"
        "<Temp><KS_GUID>g2</KS_GUID><Kart_Adi>spare</Kart_Adi></Temp>"
    )
    rows = extract_records(body, "Temp")
    assert [row["KS_GUID"] for row in rows] == ["g1", "g2"]
