from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from billing.config import Settings
from billing.domain.models import GatewayCredentials
from billing.domain.plans import PlanCatalog
from billing.gateway.client import ParamClient
from billing.providers.lemonsqueezy import LemonSqueezyClient
from billing.repositories.base import DocumentStore
from billing.services.payments_service import PaymentsService
from billing.services.reconciler import SubscriptionReconciler
from billing.webhooks.verifier import WebhookVerifier


@dataclass
class Container:
    """Collaborators built once at startup and shared by every request."""

    settings: Settings
    credentials: GatewayCredentials
    store: DocumentStore
    plans: PlanCatalog
    client: ParamClient
    verifier: WebhookVerifier
    reconciler: SubscriptionReconciler
    lemonsqueezy: LemonSqueezyClient
    payments: PaymentsService


def get_container(request: Request) -> Container:
    return request.app.state.container
