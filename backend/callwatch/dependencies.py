"""FastAPI dependency injection providers."""

from fastapi import Request
from redis.asyncio import Redis

from callwatch.monitor.pipeline import AlertPipeline
from callwatch.monitor.session import SessionRegistry
from callwatch.services.log_sink import SystemLogSink
from callwatch.services.persistence import PersistenceGateway


async def get_redis(request: Request) -> Redis:
    """Get Redis client from application state.

    Usage:
        @app.get("/example")
        async def example(redis: Redis = Depends(get_redis)):
            await redis.get("key")
    """
    return request.app.state.redis


def get_persistence(request: Request) -> PersistenceGateway:
    return request.app.state.persistence


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_log_sink(request: Request) -> SystemLogSink:
    return request.app.state.log_sink


def get_pipeline(request: Request) -> AlertPipeline:
    return request.app.state.pipeline
