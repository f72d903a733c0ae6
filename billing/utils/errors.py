from __future__ import annotations

import logging

from fastapi import HTTPException

from billing.errors import BillingError

logger = logging.getLogger(__name__)


def as_http_exception(exc: BillingError, endpoint: str) -> HTTPException:
    """Translate a typed billing failure into the HTTP error a client sees."""
    logger.info(
        "request failed",
        extra={"endpoint": endpoint, "status": exc.status_code, "outcome": exc.kind},
    )
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
