from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict

from pydantic import BaseModel, Field

from .enums import Platform, SecurityTier
from .statuses import PaymentStatus, SubscriptionStatus


class CardPayload(BaseModel):
    holder_name: str = Field(..., min_length=1)
    number: str = Field(..., min_length=12, max_length=19)
    expiry_month: str = Field(..., min_length=1, max_length=2)
    expiry_year: str = Field(..., min_length=2, max_length=4)
    cvc: str = Field(default="", max_length=4)
    holder_phone: str = ""


class PaymentCreateRequest(BaseModel):
    """Request body for starting a 3-D Secure card payment."""

    user_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., description="Plan identifier, e.g. premium_monthly")
    card: CardPayload
    user_email: str | None = None
    installment: int = Field(default=1, ge=1, le=12)


class PaymentCreateResponse(BaseModel):
    order_id: str
    status: PaymentStatus
    challenge_url: str | None = None
    challenge_html: str | None = None
    failure_reason: str | None = None


class SavedCardCreateRequest(BaseModel):
    card: CardPayload
    label: str = ""
    owner_ref: str = Field(default="", description="Opaque reference stored with the card (user id)")


class SavedCardResponse(BaseModel):
    ok: bool
    card_guid: str | None = None
    reason: str = ""


class SavedCardSummary(BaseModel):
    card_guid: str
    label: str = ""
    holder_name: str = ""
    masked_number: str = ""
    bank: str = ""


class SavedCardPayRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan_id: str
    cvv: str = Field(default="", max_length=4)
    security_tier: SecurityTier = SecurityTier.NON_3D
    user_email: str | None = None
    installment: int = Field(default=1, ge=1, le=12)


class SavedCardPayResponse(BaseModel):
    ok: bool
    order_id: str
    status: PaymentStatus
    redirect_url: str | None = None
    reason: str = ""


class PlanSummary(BaseModel):
    plan_id: str
    tier: str
    duration_months: int
    price: Decimal
    currency: str = "TRY"
    checkout_price_cents: int
    display_name: str


class CheckoutRequest(BaseModel):
    """Lemon Squeezy hosted checkout request."""

    user_id: str = Field(..., min_length=1)
    subscription_type: str = Field(..., alias="subscriptionType")
    success_url: str = Field(..., alias="successUrl")
    cancel_url: str = Field(..., alias="cancelUrl")
    user_email: str | None = Field(default=None, alias="userEmail")

    model_config = {"populate_by_name": True}


class PurchaseVerifyRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    purchase_token: str = Field(..., alias="purchaseToken", min_length=1)
    product_id: str = Field(..., alias="productId", min_length=1)
    subscription_type: str | None = Field(default=None, alias="subscriptionType")
    platform: Platform = Platform.ANDROID
    user_email: str | None = Field(default=None, alias="userEmail")

    model_config = {"populate_by_name": True}


class PurchaseVerifyResponse(BaseModel):
    success: bool = True
    message: str = "Purchase verified successfully"
    expiry_date: datetime = Field(..., alias="expiryDate")
    subscription_type: str = Field(..., alias="subscriptionType")
    purchase_date: datetime = Field(..., alias="purchaseDate")
    purchase_token: str = Field(..., alias="purchaseToken")

    model_config = {"populate_by_name": True}


class SubscriptionStatusResponse(BaseModel):
    has_active_subscription: bool = Field(..., alias="hasActiveSubscription")
    subscription_type: str | None = Field(default=None, alias="subscriptionType")
    expiry_date: datetime | None = Field(default=None, alias="expiryDate")
    purchase_date: datetime | None = Field(default=None, alias="purchaseDate")
    status: str = "inactive"
    platform: str | None = None
    remaining_days: int | None = Field(default=None, alias="remainingDays")
    is_expiring_soon: bool | None = Field(default=None, alias="isExpiringSoon")

    model_config = {"populate_by_name": True}


class FeaturesResponse(BaseModel):
    has_active_subscription: bool = Field(..., alias="hasActiveSubscription")
    subscription_type: str | None = Field(default=None, alias="subscriptionType")
    features: Dict[str, bool]
    timestamp: datetime

    model_config = {"populate_by_name": True}


class AdminSubscriptionUpdate(BaseModel):
    admin_key: str = Field(..., alias="adminKey")
    user_id: str = Field(..., alias="userId", min_length=1)
    status: SubscriptionStatus
    expiry_date: datetime = Field(..., alias="expiryDate")
    subscription_type: str = Field(..., alias="subscriptionType")

    model_config = {"populate_by_name": True}
