"""Health check endpoint with a run-store connectivity probe.

A store reporting "disconnected" does not affect the overall status ("ok");
the endpoint always returns 200 so load balancers keep routing.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Request

from shopscout.config import settings

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds


async def _check_run_store(request: Request) -> str:
    store = getattr(request.app.state, "run_store", None)
    if store is None:
        return "disconnected"
    ping = getattr(store, "ping", None)
    if ping is None:
        return "memory"
    try:
        await asyncio.wait_for(ping(), timeout=_CHECK_TIMEOUT)
        return "connected"
    except Exception as exc:
        logger.debug("health_run_store_failed", error=str(exc))
        return "disconnected"


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Confirms the API process is alive and reports run-store connectivity."""
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "run_store": await _check_run_store(request),
    }
