"""SOAPAction header negotiation.

The gateway's documentation does not pin down the exact ``SOAPAction`` format
it accepts, so the same logical call is tried with a fixed list of header
formats. A candidate is abandoned only when the response clearly says the
action was not recognised; anything else ends the negotiation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from billing.errors import ProtocolNegotiationError

logger = logging.getLogger(__name__)

# Substrings (lower-cased) that identify an "unknown action" rejection.
REJECTION_MARKERS = (
    "did not recognize the value of http header soapaction",
    "server did not recognize the value of http header",
    "unable to handle request without a valid action parameter",
    "actionnotsupported",
    "the soap action specified on the message",
    "no soapaction header",
    "soapaction header is missing",
    "invalid soapaction",
)


@dataclass(frozen=True)
class ActionCandidate:
    """One way of spelling the SOAPAction header; ``None`` omits the header."""

    name: str
    render: Callable[[str, str], str | None]

    def header(self, action: str, namespace: str) -> str | None:
        return self.render(action, namespace)


def _uri(action: str, namespace: str) -> str:
    return f"{namespace.rstrip('/')}/{action}"


ACTION_CANDIDATES: tuple[ActionCandidate, ...] = (
    ActionCandidate("quoted_name", lambda action, ns: f'"{action}"'),
    ActionCandidate("bare_name", lambda action, ns: action),
    ActionCandidate("quoted_uri", lambda action, ns: f'"{_uri(action, ns)}"'),
    ActionCandidate("bare_uri", lambda action, ns: _uri(action, ns)),
    ActionCandidate("single_quoted_name", lambda action, ns: f"'{action}'"),
    ActionCandidate("urn_name", lambda action, ns: f"urn:{action}"),
    ActionCandidate("empty", lambda action, ns: ""),
    ActionCandidate("omitted", lambda action, ns: None),
)


@dataclass(frozen=True)
class WireResponse:
    status_code: int
    text: str


def is_action_rejection(status_code: int, body: str) -> bool:
    """True when the response rejects the header format rather than the request.

    Successful responses are never rejections. Error responses count only when
    the body carries a known marker; unknown errors are real errors.
    """
    if 200 <= status_code < 300:
        return False
    lowered = (body or "").lower()
    return any(marker in lowered for marker in REJECTION_MARKERS)


SendFn = Callable[[str | None], Awaitable[WireResponse]]


async def negotiate(
    action: str,
    namespace: str,
    send: SendFn,
    candidates: Sequence[ActionCandidate] = ACTION_CANDIDATES,
) -> tuple[ActionCandidate, WireResponse]:
    """Send with each candidate header in order until one is not rejected.

    Transport errors raised by ``send`` propagate immediately.
    """
    tried: list[str] = []
    for candidate in candidates:
        header = candidate.header(action, namespace)
        response = await send(header)
        if not is_action_rejection(response.status_code, response.text):
            logger.info(
                "soap action accepted",
                extra={"action": action, "candidate": candidate.name, "status": response.status_code},
            )
            return candidate, response
        tried.append(candidate.name)
        logger.debug(
            "soap action format rejected",
            extra={"action": action, "candidate": candidate.name, "status": response.status_code},
        )
    raise ProtocolNegotiationError(
        f"Gateway rejected every SOAPAction format for {action}",
        details={"action": action, "tried": tried},
    )
