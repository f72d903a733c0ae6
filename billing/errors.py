from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for typed failures surfaced to callers.

    ``kind`` is a stable identifier clients can branch on; ``message`` is the
    human-readable reason. ``details`` carries diagnostic context for logs.
    """

    kind = "billing_error"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(BillingError):
    kind = "configuration_error"
    status_code = 500


class ValidationError(BillingError):
    kind = "validation_error"
    status_code = 400


class TransportError(BillingError):
    """Network failure or timeout talking to the gateway. Never retried here."""

    kind = "transport_error"
    status_code = 502


class ProtocolNegotiationError(TransportError):
    """Every SOAPAction candidate was rejected by the remote service."""

    kind = "protocol_negotiation_error"


class ProtocolFaultError(BillingError):
    kind = "protocol_fault"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        action: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.action = action
        self.code = code


class UnparsedResponseError(ProtocolFaultError):
    """Gateway answered with something the parser could not read."""

    kind = "unparsed_response"


class VerificationError(BillingError):
    kind = "verification_error"
    status_code = 400


class NotFoundError(BillingError):
    kind = "not_found"
    status_code = 404


class PersistenceError(BillingError):
    kind = "persistence_error"
    status_code = 503


class AppStateError(BillingError):
    """Operation invoked in a state that does not allow it (caller error)."""

    kind = "invalid_state"
    status_code = 409
