"""Shared test fixtures for CallWatch backend tests."""

import asyncio
import json
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from starlette.websockets import WebSocketDisconnect

from callwatch.config import Settings, settings
from callwatch.main import app
from callwatch.monitor.dispatcher import DeliveryOutcome, SMSDispatcher
from callwatch.monitor.pipeline import AlertPipeline
from callwatch.monitor.session import SessionRegistry
from callwatch.services.log_sink import SystemLogSink
from callwatch.services.persistence import RedisPersistence

TEST_API_KEY = "test-key"
EMERGENCY_CONTACT = "+15550001111"


class FakeSTTConnection:
    """In-memory stand-in for the streaming STT socket."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._events: asyncio.Queue = asyncio.Queue()

    async def send_audio(self, payload: str):
        self.sent.append(payload)

    async def push(self, event):
        await self._events.put(event if isinstance(event, str) else json.dumps(event))

    async def __aiter__(self):
        while True:
            item = await self._events.get()
            if item is None:
                return
            yield item

    async def close(self):
        self.closed = True
        self._events.put_nowait(None)


class FakeInbound:
    """In-memory stand-in for the voice provider's media WebSocket."""

    def __init__(self):
        self.closed = False
        self._messages: asyncio.Queue = asyncio.Queue()

    async def send(self, message):
        await self._messages.put(message if isinstance(message, str) else json.dumps(message))

    def disconnect(self):
        self._messages.put_nowait(None)

    async def receive_text(self) -> str:
        item = await self._messages.get()
        if item is None:
            raise WebSocketDisconnect(1000)
        return item

    async def close(self, code: int = 1000):
        self.closed = True
        self._messages.put_nowait(None)


def start_event(call_sid: str = "CA123", contact: Optional[str] = EMERGENCY_CONTACT) -> dict:
    params = {"emergencyContact": contact} if contact else {}
    return {
        "event": "start",
        "streamSid": "MZ123",
        "start": {
            "callSid": call_sid,
            "streamSid": "MZ123",
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
            "customParameters": params,
        },
    }


def final_event(text: str, confidence: float = 0.92) -> dict:
    return {
        "message_type": "FinalTranscript",
        "text": text,
        "confidence": confidence,
        "audio_start": 0,
        "audio_end": 1500,
    }


async def wait_for(condition, timeout: float = 2.0):
    """Poll until condition() is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        api_key=TEST_API_KEY,
        default_emergency_contact=EMERGENCY_CONTACT,
        twilio_account_sid="ACtest",
        twilio_auth_token="token",
        twilio_phone_number="+15559990000",
        assemblyai_api_key="aai-test",
    )


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def persistence(redis_client):
    return RedisPersistence(redis_client)


@pytest_asyncio.fixture
async def log_sink(persistence):
    sink = SystemLogSink(persistence, maxsize=100)
    sink.start()
    yield sink
    await sink.stop()


@pytest.fixture
def dispatcher():
    mock = MagicMock(spec=SMSDispatcher)
    mock.send = AsyncMock(
        return_value=DeliveryOutcome(success=True, message_sid="SM123", status="queued")
    )
    return mock


@pytest.fixture
def pipeline(persistence, dispatcher, log_sink, test_settings):
    return AlertPipeline(persistence, dispatcher, log_sink, settings=test_settings)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def fake_stt():
    return FakeSTTConnection()


@pytest_asyncio.fixture
async def client(redis_client, persistence, log_sink, pipeline, registry, fake_stt, monkeypatch):
    """Async HTTP client with fake Redis and a mocked SMS dispatcher."""
    monkeypatch.setattr(settings, "api_key", TEST_API_KEY)
    monkeypatch.setattr(settings, "public_base_url", "https://monitor.example.com")
    monkeypatch.setattr(settings, "default_emergency_contact", EMERGENCY_CONTACT)

    telephony = MagicMock()
    telephony.place_call = AsyncMock(return_value={"sid": "CA-new", "status": "queued"})

    app.state.redis = redis_client
    app.state.persistence = persistence
    app.state.log_sink = log_sink
    app.state.pipeline = pipeline
    app.state.registry = registry
    app.state.telephony = telephony
    app.state.stt_connector = AsyncMock(return_value=fake_stt)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers():
    return {"X-API-Key": TEST_API_KEY}
