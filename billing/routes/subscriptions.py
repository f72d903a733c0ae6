from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from billing.container import Container, get_container
from billing.domain.dtos import (
    AdminSubscriptionUpdate,
    FeaturesResponse,
    PlanSummary,
    PurchaseVerifyRequest,
    PurchaseVerifyResponse,
    SubscriptionStatusResponse,
)
from billing.errors import BillingError
from billing.utils.errors import as_http_exception
from billing.utils.security import verify_admin_key, verify_bearer_token

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)


@router.get("/plans", response_model=list[PlanSummary])
async def list_plans(container: Container = Depends(get_container)) -> list[PlanSummary]:
    return [
        PlanSummary(
            plan_id=plan.plan_id,
            tier=plan.tier.value,
            duration_months=plan.months,
            price=plan.price,
            checkout_price_cents=plan.checkout_price_cents,
            display_name=plan.display_name,
        )
        for plan in container.plans
    ]


@router.get(
    "/user/subscription",
    response_model=SubscriptionStatusResponse,
    dependencies=[Depends(verify_bearer_token)],
)
async def user_subscription(
    user_id: str = Query(..., min_length=1),
    container: Container = Depends(get_container),
) -> SubscriptionStatusResponse:
    try:
        view = await container.payments.subscription_status(user_id)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/user/subscription") from exc
    record = view.record
    if record is None or record.expiry_date is None:
        return SubscriptionStatusResponse(has_active_subscription=False)
    return SubscriptionStatusResponse(
        has_active_subscription=view.active,
        subscription_type=record.plan_id,
        expiry_date=record.expiry_date,
        purchase_date=record.purchase_date,
        status=record.status.value if record.status else "inactive",
        platform=record.source_platform.value if record.source_platform else None,
        remaining_days=view.remaining_days,
        is_expiring_soon=view.is_expiring_soon,
    )


@router.get("/user/features", response_model=FeaturesResponse, dependencies=[Depends(verify_bearer_token)])
async def user_features(
    user_id: str = Query(..., min_length=1),
    container: Container = Depends(get_container),
) -> FeaturesResponse:
    try:
        view, features = await container.payments.features(user_id)
    except BillingError as exc:
        raise as_http_exception(exc, "/api/user/features") from exc
    return FeaturesResponse(
        has_active_subscription=view.active,
        subscription_type=view.record.plan_id if view.record else None,
        features=features,
        timestamp=container.payments.clock(),
    )


@router.post(
    "/purchases/verify",
    response_model=PurchaseVerifyResponse,
    dependencies=[Depends(verify_bearer_token)],
)
async def verify_purchase(
    body: PurchaseVerifyRequest,
    container: Container = Depends(get_container),
) -> PurchaseVerifyResponse:
    try:
        record = await container.payments.verify_store_purchase(
            body.user_id,
            body.purchase_token,
            body.product_id,
            plan_id=body.subscription_type,
            platform=body.platform,
        )
    except BillingError as exc:
        raise as_http_exception(exc, "/api/purchases/verify") from exc
    return PurchaseVerifyResponse(
        expiry_date=record.expiry_date,
        subscription_type=record.plan_id or "",
        purchase_date=record.purchase_date,
        purchase_token=body.purchase_token,
    )


@router.post("/admin/update-subscription")
async def admin_update_subscription(
    body: AdminSubscriptionUpdate,
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    verify_admin_key(container.settings, body.admin_key)
    try:
        await container.payments.admin_update(
            body.user_id,
            status=body.status,
            expiry_date=body.expiry_date,
            plan_id=body.subscription_type,
        )
    except BillingError as exc:
        raise as_http_exception(exc, "/api/admin/update-subscription") from exc
    return {"success": True, "message": "Subscription updated"}
