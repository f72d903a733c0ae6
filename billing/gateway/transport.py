from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Sequence

import httpx

from billing.domain.models import GatewayCredentials
from billing.errors import TransportError

from .envelope import CONTENT_TYPE, build_envelope
from .negotiation import ACTION_CANDIDATES, ActionCandidate, WireResponse, negotiate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class LegacyProtocolTransport:
    """Sends SOAP requests to the Param endpoint and returns the raw reply.

    There is no automatic retry: payment calls are not idempotent on the
    remote side, so retrying is left to the caller.
    """

    def __init__(
        self,
        credentials: GatewayCredentials,
        *,
        namespace: str = "https://turkpos.com.tr/",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        candidates: Sequence[ActionCandidate] = ACTION_CANDIDATES,
    ) -> None:
        self.credentials = credentials
        self.namespace = namespace
        self.timeout = timeout
        self._transport = transport
        self._candidates = tuple(candidates)

    def build_request_fields(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Prefix the ``G`` authentication block unless the caller set one."""
        if "G" in fields:
            return dict(fields)
        merged: dict[str, Any] = {"G": self.credentials.auth_block()}
        merged.update(fields)
        return merged

    async def call(self, action: str, fields: Mapping[str, Any]) -> str:
        body = build_envelope(action, self.build_request_fields(fields), self.namespace)
        url = self.credentials.endpoint_url
        started = time.monotonic()
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:

            async def send(soap_action: str | None) -> WireResponse:
                headers = {"Content-Type": CONTENT_TYPE}
                if soap_action is not None:
                    headers["SOAPAction"] = soap_action
                try:
                    resp = await asyncio.wait_for(
                        client.post(url, content=body.encode("utf-8"), headers=headers),
                        timeout=self.timeout,
                    )
                except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                    logger.info(
                        "param request timed out",
                        extra={"action": action, "endpoint": url, "latency_ms": _elapsed_ms(started)},
                    )
                    raise TransportError(
                        f"Param {action} timed out after {self.timeout:.0f}s",
                        details={"action": action},
                    ) from exc
                except httpx.HTTPError as exc:
                    logger.info(
                        "param request failed",
                        extra={"action": action, "endpoint": url, "event": str(exc)},
                    )
                    raise TransportError(
                        f"Param {action} request failed: {exc}",
                        details={"action": action},
                    ) from exc
                return WireResponse(status_code=resp.status_code, text=resp.text)

            candidate, response = await negotiate(action, self.namespace, send, self._candidates)

        logger.info(
            "param call completed",
            extra={
                "action": action,
                "candidate": candidate.name,
                "status": response.status_code,
                "latency_ms": _elapsed_ms(started),
            },
        )
        logger.debug("param raw response", extra={"action": action, "event": response.text[:2000]})
        return response.text


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
