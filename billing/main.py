from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing.config import Settings, resolve_credentials, settings
from billing.container import Container
from billing.db.client import close_pool, init_pool
from billing.domain.plans import PlanCatalog, catalog
from billing.gateway.client import ParamClient
from billing.gateway.transport import LegacyProtocolTransport
from billing.logging import setup_logging
from billing.providers.lemonsqueezy import LemonSqueezyClient
from billing.repositories.base import DocumentStore
from billing.repositories.memory_store import InMemoryDocumentStore
from billing.repositories.pg_store import PgDocumentStore
from billing.routes import health, lemonsqueezy, param, subscriptions
from billing.services.payments_service import PaymentsService
from billing.services.reconciler import SubscriptionReconciler, utcnow
from billing.webhooks.verifier import WebhookVerifier

setup_logging()
logger = logging.getLogger(__name__)


def _default_store(cfg: Settings) -> DocumentStore:
    if cfg.db_enabled:
        return PgDocumentStore()
    logger.info("db disabled; using in-memory store", extra={"mode": cfg.param_mode.value})
    return InMemoryDocumentStore()


def build_container(
    cfg: Settings,
    *,
    store: DocumentStore | None = None,
    plans: PlanCatalog = catalog,
    http_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Container:
    """Wire every collaborator from one settings object.

    Credentials are resolved here so a misconfigured mode fails at startup.
    """
    credentials = resolve_credentials(cfg)
    if store is None:
        store = _default_store(cfg)
    transport = LegacyProtocolTransport(
        credentials,
        namespace=cfg.param_namespace,
        timeout=cfg.param_timeout_seconds,
        transport=http_transport,
    )
    client = ParamClient(transport)
    lemon = LemonSqueezyClient(cfg, transport=http_transport)
    return Container(
        settings=cfg,
        credentials=credentials,
        store=store,
        plans=plans,
        client=client,
        verifier=WebhookVerifier(credentials),
        reconciler=SubscriptionReconciler(store, plans, clock),
        lemonsqueezy=lemon,
        payments=PaymentsService(store, plans, client, cfg, lemonsqueezy=lemon, clock=clock),
    )


def create_app(
    cfg: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    cfg = cfg or settings
    container = build_container(cfg, store=store, http_transport=http_transport, clock=clock)
    uses_db = store is None and cfg.db_enabled

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if uses_db:
            init_pool(cfg)
            await container.store.ensure_schema()  # type: ignore[attr-defined]
        yield
        if uses_db:
            close_pool()

    app = FastAPI(title="Param Subscriptions API", lifespan=lifespan)
    app.state.settings = cfg
    app.state.container = container
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(health.router)
    app.include_router(param.router)
    app.include_router(subscriptions.router)
    app.include_router(lemonsqueezy.router)
    return app


app = create_app()
