from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

from billing.container import Container, get_container
from billing.domain.dtos import (
    CardPayload,
    PaymentCreateRequest,
    PaymentCreateResponse,
    SavedCardCreateRequest,
    SavedCardPayRequest,
    SavedCardPayResponse,
    SavedCardResponse,
    SavedCardSummary,
)
from billing.errors import BillingError
from billing.gateway.three_d import CardData, ChallengeCallback, FlowState
from billing.utils.errors import as_http_exception
from billing.utils.security import verify_bearer_token

router = APIRouter(prefix="/api/param")
logger = logging.getLogger(__name__)

WEBHOOK_ACK = "OK"


def _card(payload: CardPayload) -> CardData:
    return CardData(
        holder_name=payload.holder_name,
        number=payload.number,
        expiry_month=payload.expiry_month,
        expiry_year=payload.expiry_year,
        cvc=payload.cvc,
        holder_phone=payload.holder_phone,
    )


def _frontend_redirect(container: Container, page: str, order_id: str | None = None) -> RedirectResponse:
    base = container.settings.frontend_url.rstrip("/")
    url = f"{base}/{page}"
    if order_id:
        url = f"{url}?gateway=param&transaction={order_id}"
    return RedirectResponse(url=url, status_code=302)


@router.post("/payments", response_model=PaymentCreateResponse, dependencies=[Depends(verify_bearer_token)])
async def create_payment(
    body: PaymentCreateRequest,
    request: Request,
    container: Container = Depends(get_container),
) -> PaymentCreateResponse:
    try:
        started = await container.payments.start_payment(
            body.user_id,
            body.plan_id,
            _card(body.card),
            user_email=body.user_email,
            installment=body.installment,
            client_ip=request.client.host if request.client else None,
        )
    except BillingError as exc:
        raise as_http_exception(exc, "/api/param/payments") from exc
    return PaymentCreateResponse(
        order_id=started.order_id,
        status=started.status,
        challenge_url=started.challenge_url,
        challenge_html=started.challenge_html,
        failure_reason=started.failure_reason,
    )


@router.post("/3d/callback")
async def three_d_callback(request: Request, container: Container = Depends(get_container)) -> RedirectResponse:
    """Receives the issuer's post-back once the user finished the challenge."""
    form = await request.form()
    order_id = str(form.get("orderId") or "")
    callback = ChallengeCallback(
        order_id=order_id,
        session_token=str(form.get("md") or ""),
        md_status=str(form["mdStatus"]) if form.get("mdStatus") is not None else None,
        islem_guid=str(form.get("islemGUID") or "") or None,
    )
    logger.info("3d callback received", extra={"endpoint": "/api/param/3d/callback", "order_id": order_id})
    try:
        session = await container.payments.complete_challenge(callback)
    except BillingError as exc:
        logger.info(
            "3d callback rejected",
            extra={"endpoint": "/api/param/3d/callback", "order_id": order_id, "outcome": exc.kind},
        )
        return _frontend_redirect(container, "payment-error")
    if session.state is FlowState.COMPLETED:
        return _frontend_redirect(container, "payment-success", order_id)
    return _frontend_redirect(container, "payment-failed", order_id)


async def _user_returned(container: Container, order_id: str, user_id: str | None, succeeded: bool) -> RedirectResponse:
    endpoint = "/api/param/success" if succeeded else "/api/param/fail"
    try:
        await container.payments.record_return(order_id, user_id, succeeded=succeeded)
    except BillingError as exc:
        logger.info("return callback rejected", extra={"endpoint": endpoint, "order_id": order_id, "outcome": exc.kind})
        return _frontend_redirect(container, "payment-error")
    return _frontend_redirect(container, "payment-success" if succeeded else "payment-failed", order_id)


@router.get("/success")
async def payment_success(
    order_id: str = Query(default=""),
    user_id: str | None = Query(default=None),
    container: Container = Depends(get_container),
) -> RedirectResponse:
    return await _user_returned(container, order_id, user_id, succeeded=True)


@router.get("/fail")
async def payment_fail(
    order_id: str = Query(default=""),
    user_id: str | None = Query(default=None),
    container: Container = Depends(get_container),
) -> RedirectResponse:
    return await _user_returned(container, order_id, user_id, succeeded=False)


@router.post("/webhook", response_class=PlainTextResponse)
async def param_webhook(request: Request, container: Container = Depends(get_container)) -> PlainTextResponse:
    form = await request.form()
    payload = {key: str(value) for key, value in form.items()}
    logger.info(
        "param webhook received",
        extra={"endpoint": "/api/param/webhook", "order_id": payload.get("order_id", "")},
    )
    try:
        event = container.verifier.verified_event(payload)
        result = await container.reconciler.reconcile(event)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/param/webhook") from exc
    logger.info(
        "param webhook processed",
        extra={"endpoint": "/api/param/webhook", "order_id": result.order_id, "applied": result.applied},
    )
    return PlainTextResponse(WEBHOOK_ACK)


@router.post("/cards", response_model=SavedCardResponse, dependencies=[Depends(verify_bearer_token)])
async def save_card(body: SavedCardCreateRequest, container: Container = Depends(get_container)) -> SavedCardResponse:
    try:
        result = await container.payments.save_card(_card(body.card), label=body.label, owner_ref=body.owner_ref)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/param/cards") from exc
    if not result.ok:
        raise HTTPException(status_code=422, detail={"kind": "card_rejected", "message": result.reason})
    return SavedCardResponse(ok=True, card_guid=result.card_guid, reason=result.reason)


@router.get("/cards", response_model=list[SavedCardSummary], dependencies=[Depends(verify_bearer_token)])
async def list_cards(
    card_guid: str = Query(default=""),
    label: str = Query(default=""),
    container: Container = Depends(get_container),
) -> list[SavedCardSummary]:
    try:
        cards = await container.payments.list_cards(card_guid=card_guid, label=label)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/param/cards") from exc
    return [
        SavedCardSummary(
            card_guid=card.card_guid,
            label=card.label,
            holder_name=card.holder_name,
            masked_number=card.masked_number,
            bank=card.bank,
        )
        for card in cards
    ]


@router.delete("/cards/{card_guid}", response_model=SavedCardResponse, dependencies=[Depends(verify_bearer_token)])
async def delete_card(card_guid: str, container: Container = Depends(get_container)) -> SavedCardResponse:
    try:
        result = await container.payments.delete_card(card_guid)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/param/cards") from exc
    if not result.ok:
        raise HTTPException(status_code=422, detail={"kind": "card_rejected", "message": result.reason})
    return SavedCardResponse(ok=True, card_guid=result.card_guid, reason=result.reason)


@router.post(
    "/cards/{card_guid}/pay",
    response_model=SavedCardPayResponse,
    dependencies=[Depends(verify_bearer_token)],
)
async def pay_with_card(
    card_guid: str,
    body: SavedCardPayRequest,
    container: Container = Depends(get_container),
) -> SavedCardPayResponse:
    try:
        result, status = await container.payments.pay_with_saved_card(
            card_guid,
            body.cvv,
            user_id=body.user_id,
            plan_id=body.plan_id,
            user_email=body.user_email,
            installment=body.installment,
            security_tier=body.security_tier,
        )
    except BillingError as exc:
        raise as_http_exception(exc, "/api/param/cards/pay") from exc
    return SavedCardPayResponse(
        ok=result.ok,
        order_id=result.order_id,
        status=status,
        redirect_url=result.redirect_url,
        reason=result.reason,
    )
