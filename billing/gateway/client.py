from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from billing.domain.models import GatewayCredentials
from billing.errors import ProtocolFaultError, UnparsedResponseError

from .parser import Fault, Success, Unparsed, parse

logger = logging.getLogger(__name__)

RESULT_CODE = "Sonuc"
RESULT_MESSAGE = "Sonuc_Str"


class Transport(Protocol):
    credentials: GatewayCredentials

    async def call(self, action: str, fields: Mapping[str, Any]) -> str:
        ...


def result_code(result: Success) -> int | None:
    raw = result.get(RESULT_CODE)
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def result_message(result: Success, default: str = "") -> str:
    return result.get(RESULT_MESSAGE) or result.get("Sonuc_Aciklama") or result.get("Mesaj") or default


class ParamClient:
    """Runs one Param operation and returns its parsed fields.

    Faults and unreadable responses become exceptions, so callers only see
    ``Success`` and must still check the provider result code themselves.
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    @property
    def credentials(self) -> GatewayCredentials:
        return self.transport.credentials

    async def invoke(self, action: str, fields: Mapping[str, Any]) -> Success:
        raw = await self.transport.call(action, fields)
        result = parse(raw, action)
        if isinstance(result, Fault):
            logger.info("param fault", extra={"action": action, "outcome": result.outcome, "event": result.message})
            raise ProtocolFaultError(result.message, action=action, code=result.code)
        if isinstance(result, Unparsed):
            logger.info("param response unparsed", extra={"action": action, "outcome": result.outcome})
            logger.debug("param unparsed body", extra={"action": action, "event": result.raw[:2000]})
            raise UnparsedResponseError(f"Could not read the {action} response", action=action)
        return result
