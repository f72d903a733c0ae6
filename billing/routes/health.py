from __future__ import annotations

import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from billing.container import Container, get_container
from billing.domain.statuses import PaymentStatus
from billing.errors import PersistenceError

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


async def _collect_payment_metrics(container: Container) -> dict[str, Any]:
    metrics: dict[str, Any] = {"connected": False, "status_counts": {}, "open": 0}
    try:
        counts = await container.store.count_by_status()
    except PersistenceError as exc:
        logger.info("health metrics collection failed", extra={"event": exc.message})
        return metrics
    metrics["connected"] = True
    metrics["status_counts"] = counts
    metrics["open"] = sum(
        count for status, count in counts.items() if status in {s.value for s in PaymentStatus if not s.is_final}
    )
    return metrics


@router.get("/health/metrics")
async def health_metrics(container: Container = Depends(get_container)) -> dict[str, Any]:
    """Detailed service health endpoint with lightweight operational metrics."""

    captured_at = datetime.now(timezone.utc)
    raw_metrics = await _collect_payment_metrics(container)
    store_connected = bool(raw_metrics.pop("connected", False))
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())
    status = "ok" if store_connected else "degraded"
    cfg = container.settings

    return {
        "status": status,
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "param_mode": cfg.param_mode.value,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "database": {
            "enabled": cfg.db_enabled,
            "connected": store_connected,
            "schema": cfg.db_schema if cfg.db_enabled else None,
        },
        "plans": len(container.plans),
        "payments": raw_metrics,
    }
