"""Health check endpoints.

Provides basic and detailed health checks for service monitoring.
"""

import time

from fastapi import APIRouter, Depends, Request
from redis.asyncio import Redis

from callwatch.dependencies import get_redis
from callwatch.utils.validate_keys import configuration_status, validate_all_keys


router = APIRouter(tags=["health"])

VERSION = "0.1.0"


@router.get("")
async def health(redis: Redis = Depends(get_redis)):
    """Basic health check with Redis status."""
    try:
        await redis.ping()
        redis_status = "connected"
    except Exception:
        redis_status = "disconnected"

    return {
        "status": "ok",
        "redis": redis_status,
        "version": VERSION,
    }


@router.get("/detailed")
async def health_detailed(
    request: Request,
    live: bool = False,
    redis: Redis = Depends(get_redis),
):
    """Detailed health check with per-service status, latency and config.

    With ?live=true the provider credentials are also checked against
    the Twilio and AssemblyAI APIs.
    """
    services = {
        "api": {"status": "running"},
        "sessions": {"active": len(request.app.state.registry)},
        "log_sink": request.app.state.log_sink.stats,
    }

    try:
        start = time.time()
        await redis.ping()
        latency_ms = round((time.time() - start) * 1000, 2)
        services["redis"] = {"status": "connected", "latency_ms": latency_ms}
        overall_status = "ok"
    except Exception:
        services["redis"] = {"status": "disconnected"}
        overall_status = "degraded"

    config = configuration_status()
    if not (config["twilio_account_sid"] and config["twilio_auth_token"]
            and config["assemblyai_api_key"]):
        overall_status = "degraded"

    body = {
        "status": overall_status,
        "version": VERSION,
        "services": services,
        "configuration": config,
    }
    if live:
        body["providers"] = await validate_all_keys()
    return body
