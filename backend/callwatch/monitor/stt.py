"""
Real-time speech-to-text connection (AssemblyAI streaming WebSocket).

Audio goes out as {"audio_data": <base64 payload>}; transcript events come
back as JSON with a message_type of PartialTranscript, FinalTranscript,
SessionBegins, SessionTerminated or Error.
"""

import json
import logging
from enum import Enum
from typing import AsyncIterator, Optional

import aiohttp
from pydantic import BaseModel

from callwatch.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class STTMessageType(str, Enum):
    PARTIAL = "PartialTranscript"
    FINAL = "FinalTranscript"
    SESSION_BEGINS = "SessionBegins"
    SESSION_TERMINATED = "SessionTerminated"
    ERROR = "Error"


class TranscriptEvent(BaseModel):
    message_type: str
    text: str = ""
    confidence: float = 0.0
    audio_start: Optional[int] = None
    audio_end: Optional[int] = None
    session_id: Optional[str] = None
    error: Optional[str] = None


class STTConnectError(RuntimeError):
    pass


class AssemblyAIConnection:
    """One streaming transcription session.

    Iterating the connection yields raw text frames until the provider
    closes the socket.
    """

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send_audio(self, payload: str):
        await self._ws.send_str(json.dumps({"audio_data": payload}))

    async def __aiter__(self) -> AsyncIterator[str]:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("STT WebSocket error: %s", self._ws.exception())
                break

    async def close(self):
        try:
            if not self._ws.closed:
                await self._ws.send_str(json.dumps({"terminate_session": True}))
                await self._ws.close()
        except Exception as e:
            logger.debug("STT close error: %s", e)
        finally:
            await self._session.close()


async def connect_assemblyai(settings: Settings = default_settings) -> AssemblyAIConnection:
    """Open a real-time transcription session. Raises STTConnectError."""
    if not settings.assemblyai_api_key:
        raise STTConnectError("AssemblyAI API key not configured")

    url = (
        f"{settings.assemblyai_realtime_url}"
        f"?sample_rate={settings.stt_sample_rate}&encoding=pcm_mulaw"
    )
    session = aiohttp.ClientSession()
    try:
        ws = await session.ws_connect(
            url, headers={"Authorization": settings.assemblyai_api_key}
        )
    except Exception as e:
        await session.close()
        raise STTConnectError(f"Failed to connect to AssemblyAI: {e}") from e
    except BaseException:
        # Cancelled while connecting
        await session.close()
        raise

    logger.info("Connected to AssemblyAI real-time transcription")
    return AssemblyAIConnection(session, ws)
