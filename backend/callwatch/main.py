"""CallWatch API — main application entry point.

Creates FastAPI app with:
- Redis-backed record store, system log sink and session registry
  (created on startup, drained and closed on shutdown)
- Access audit logging middleware
- CORS middleware
- Voice webhooks, media stream, monitor, dashboard and health endpoints
"""

import logging
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Security
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from callwatch.config import settings
from callwatch.middleware.audit import AccessAuditMiddleware
from callwatch.middleware.auth import verify_api_key
from callwatch.monitor.dispatcher import SMSDispatcher
from callwatch.monitor.pipeline import AlertPipeline
from callwatch.monitor.session import SessionRegistry
from callwatch.monitor.stt import connect_assemblyai
from callwatch.services.log_sink import SystemLogSink
from callwatch.services.persistence import RedisPersistence
from callwatch.services.telephony import TelephonyService

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("callwatch")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle — Redis connection and log sink."""
    # Startup
    from callwatch.utils.validate_keys import log_configuration_warnings
    log_configuration_warnings()

    app.state.redis = Redis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    try:
        await app.state.redis.ping()
        logger.info("Redis connected at %s", settings.redis_url)
    except Exception as e:
        logger.warning("Redis connection failed: %s (app will start anyway)", e)

    app.state.persistence = RedisPersistence(app.state.redis)
    app.state.registry = SessionRegistry()
    app.state.log_sink = SystemLogSink(app.state.persistence, settings.log_sink_queue_size)
    app.state.log_sink.start()
    app.state.telephony = TelephonyService()
    app.state.pipeline = AlertPipeline(
        app.state.persistence,
        SMSDispatcher(),
        app.state.log_sink,
    )
    app.state.stt_connector = partial(connect_assemblyai, settings)
    logger.info("Monitoring %d trigger keywords", len(settings.trigger_keywords))
    yield

    # Shutdown
    await app.state.log_sink.stop()
    await app.state.redis.aclose()
    logger.info("Redis disconnected")


app = FastAPI(
    title="CallWatch API",
    version="0.1.0",
    description="Call monitoring with trigger-word SMS alerts",
    lifespan=lifespan,
)

# Middleware (LIFO order: last added runs first on request)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.access_audit_log:
    app.add_middleware(AccessAuditMiddleware)


# Routes
from callwatch.routers import health, monitor, voice
from callwatch.api import dashboard

app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(voice.router, prefix="/api/voice", tags=["Voice"])
app.include_router(
    monitor.router,
    prefix="/api/monitor",
    tags=["Monitor"],
    dependencies=[Security(verify_api_key)],
)
app.include_router(
    dashboard.router,
    prefix="/api/dashboard",
    tags=["Dashboard"],
    dependencies=[Security(verify_api_key)],
)


def run():
    import uvicorn

    uvicorn.run("callwatch.main:app", host=settings.api_host, port=settings.api_port)
