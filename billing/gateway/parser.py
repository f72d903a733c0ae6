"""Layered extraction of results from Param SOAP responses.

Response shapes differ per operation and are not formally specified, so the
parser is permissive: it tries increasingly generic patterns and reports
``Unparsed`` instead of raising when nothing matches. Callers must still
check that the fields they need are present.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Union
from xml.sax.saxutils import unescape

PROVIDER_RESULT_TAG = "DT_Bilgi"

_ENTITIES = {"&apos;": "'", "&quot;": '"'}
_FAULT_RE = re.compile(r"<(?:[\w.-]+:)?Fault\b", re.IGNORECASE)
_FAULT_STRING_RE = re.compile(r"<(?:[\w.-]+:)?faultstring\b[^>]*>(.*?)</(?:[\w.-]+:)?faultstring>", re.IGNORECASE | re.DOTALL)
_FAULT_TEXT_RE = re.compile(r"<(?:[\w.-]+:)?Text\b[^>]*>(.*?)</(?:[\w.-]+:)?Text>", re.DOTALL)
_FAULT_CODE_RE = re.compile(r"<(?:[\w.-]+:)?faultcode\b[^>]*>(.*?)</(?:[\w.-]+:)?faultcode>", re.IGNORECASE | re.DOTALL)
_BODY_RE = re.compile(r"<(?:[\w.-]+:)?Body\b[^>]*>(.*)</(?:[\w.-]+:)?Body\s*>", re.DOTALL)
_LEAF_RE = re.compile(r"<(?:[\w.-]+:)?([\w.-]+)(?:\s[^<>]*)?>([^<]*)</(?:[\w.-]+:)?\1\s*>")
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class Success:
    fields: dict[str, str]
    body: str = ""
    outcome: Literal["success"] = field(default="success", init=False)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.fields.get(name, default)


@dataclass(frozen=True)
class Fault:
    message: str
    code: str | None = None
    raw: str = ""
    outcome: Literal["fault"] = field(default="fault", init=False)


@dataclass(frozen=True)
class Unparsed:
    raw: str
    outcome: Literal["unparsed"] = field(default="unparsed", init=False)


ParsedResult = Union[Success, Fault, Unparsed]


def _text(value: str) -> str:
    return unescape(value, _ENTITIES).strip()


def _leaf_text(value: str) -> str:
    # Leaf values are kept verbatim so serialized fields parse back unchanged.
    return unescape(value, _ENTITIES)


def _element_content(text: str, tag: str) -> str | None:
    pattern = re.compile(
        rf"<(?:[\w.-]+:)?{re.escape(tag)}(?:\s[^<>]*)?>(.*?)</(?:[\w.-]+:)?{re.escape(tag)}\s*>",
        re.DOTALL,
    )
    match = pattern.search(text)
    if match is None:
        return None
    return match.group(1)


def scan_leaf_elements(text: str) -> dict[str, str]:
    """Collect every ``<tag>value</tag>`` leaf into a flat mapping.

    Later occurrences of a tag overwrite earlier ones.
    """
    return {name: _leaf_text(value) for name, value in _LEAF_RE.findall(text)}


def extract_records(text: str, record_tag: str) -> list[dict[str, str]]:
    """Return one mapping per ``record_tag`` element (for list operations)."""
    pattern = re.compile(
        rf"<(?:[\w.-]+:)?{re.escape(record_tag)}(?:\s[^<>]*)?>(.*?)</(?:[\w.-]+:)?{re.escape(record_tag)}\s*>",
        re.DOTALL,
    )
    return [scan_leaf_elements(chunk) for chunk in pattern.findall(text)]


def _fault(raw: str) -> Fault:
    message_match = _FAULT_STRING_RE.search(raw) or _FAULT_TEXT_RE.search(raw)
    code_match = _FAULT_CODE_RE.search(raw)
    message = _text(_TAG_RE.sub("", message_match.group(1))) if message_match else ""
    return Fault(
        message=message or "Gateway returned a SOAP fault",
        code=_text(code_match.group(1)) if code_match else None,
        raw=raw,
    )


def parse(raw: str, action: str) -> ParsedResult:
    if not raw or not raw.strip():
        return Unparsed(raw=raw or "")

    if _FAULT_RE.search(raw):
        return _fault(raw)

    body_match = _BODY_RE.search(raw)
    body = body_match.group(1) if body_match else raw

    for tag in (f"{action}Result", f"{action}Response", "Result", PROVIDER_RESULT_TAG):
        content = _element_content(body, tag)
        if content is None or not content.strip():
            continue
        fields = scan_leaf_elements(content)
        if not fields and not _TAG_RE.search(content):
            fields = {tag: _text(content)}
        if fields:
            return Success(fields=fields, body=content)

    fields = scan_leaf_elements(body)
    if fields:
        return Success(fields=fields, body=body)
    return Unparsed(raw=raw)
