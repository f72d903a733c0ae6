from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"
CONTENT_TYPE = "text/xml; charset=utf-8"

_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    "'": "&apos;",
    '"': "&quot;",
}


def escape_text(value: Any) -> str:
    """Escape the five reserved markup characters.

    Card holder names and addresses are user input, so every text node goes
    through here before it is placed in the envelope.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, Decimal):
        text = format(value, "f")
    else:
        text = str(value)
    return "".join(_ESCAPES.get(ch, ch) for ch in text)


def serialize_fields(fields: Mapping[str, Any]) -> str:
    """Serialize a mapping into nested elements, preserving insertion order."""
    parts: list[str] = []
    for name, value in fields.items():
        if isinstance(value, Mapping):
            parts.append(f"<{name}>{serialize_fields(value)}</{name}>")
        elif isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, Mapping):
                    parts.append(f"<{name}>{serialize_fields(item)}</{name}>")
                else:
                    parts.append(f"<{name}>{escape_text(item)}</{name}>")
        else:
            parts.append(f"<{name}>{escape_text(value)}</{name}>")
    return "".join(parts)


def build_envelope(action: str, fields: Mapping[str, Any], namespace: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:xsi="{XSI_NS}" xmlns:xsd="{XSD_NS}" xmlns:soap="{SOAP_ENV_NS}">'
        "<soap:Body>"
        f'<{action} xmlns="{escape_text(namespace)}">'
        f"{serialize_fields(fields)}"
        f"</{action}>"
        "</soap:Body>"
        "</soap:Envelope>"
    )
