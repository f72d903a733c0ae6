from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request

from billing.container import Container, get_container
from billing.domain.dtos import CheckoutRequest
from billing.errors import BillingError
from billing.utils.errors import as_http_exception
from billing.utils.security import verify_bearer_token

router = APIRouter(prefix="/api/lemonsqueezy")
logger = logging.getLogger(__name__)


@router.post("/create-checkout", dependencies=[Depends(verify_bearer_token)])
async def create_checkout(body: CheckoutRequest, container: Container = Depends(get_container)) -> dict[str, str]:
    try:
        url = await container.payments.create_checkout(
            body.user_id,
            body.subscription_type,
            success_url=body.success_url,
            user_email=body.user_email,
        )
    except BillingError as exc:
        raise as_http_exception(exc, "/api/lemonsqueezy/create-checkout") from exc
    return {"url": url}


@router.post("/webhook")
async def lemonsqueezy_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    x_event_name: str | None = Header(default=None),
    container: Container = Depends(get_container),
) -> dict[str, bool]:
    body = await request.body()
    try:
        event = container.lemonsqueezy.parse_webhook(body, x_signature, x_event_name)
        applied = await container.payments.apply_lemonsqueezy_event(event)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/lemonsqueezy/webhook") from exc
    logger.info(
        "lemonsqueezy webhook processed",
        extra={"endpoint": "/api/lemonsqueezy/webhook", "event": event.name, "applied": applied},
    )
    return {"received": True}
