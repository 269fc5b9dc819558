"""
Transcript ingest loop, one instance per live media stream.

States:
  IDLE → STREAM_OPEN → CONNECTED → CLOSED

  STREAM_OPEN: inbound media socket accepted, STT not connected yet
               (audio frames are dropped with a warning)
  CONNECTED:   audio is forwarded to STT, transcript events are evaluated
  CLOSED:      either side went away; the other side is closed too

Two reader tasks run side by side: one for the voice provider's media
messages and one for the STT provider's transcript events. Alert dispatch
runs in its own task so neither reader waits on the SMS gateway.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Set

from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from callwatch.config import Settings, settings as default_settings
from callwatch.models import (
    CallStatus,
    LogLevel,
    Speaker,
    TranscriptKind,
    TranscriptLine,
    utcnow,
)
from callwatch.monitor.pipeline import AlertPipeline
from callwatch.monitor.session import CallSession, SessionRegistry
from callwatch.monitor.stt import STTMessageType, TranscriptEvent
from callwatch.services.log_sink import SystemLogSink
from callwatch.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

COMPONENT = "ingest"
DROP_WARN_EVERY = 50


class IngestState(str, Enum):
    IDLE = "idle"
    STREAM_OPEN = "stream_open"
    CONNECTED = "connected"
    CLOSED = "closed"


class InboundChannel(Protocol):
    async def receive_text(self) -> str: ...
    async def close(self, code: int = 1000) -> None: ...


class STTConnection(Protocol):
    closed: bool

    async def send_audio(self, payload: str) -> None: ...
    def __aiter__(self) -> AsyncIterator[str]: ...
    async def close(self) -> None: ...


STTConnector = Callable[[], Awaitable[STTConnection]]


def _clamp_confidence(value: Any) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


class TranscriptIngestLoop:
    def __init__(
        self,
        registry: SessionRegistry,
        persistence: PersistenceGateway,
        pipeline: AlertPipeline,
        log_sink: SystemLogSink,
        stt_connector: STTConnector,
        settings: Settings = default_settings,
    ):
        self.registry = registry
        self.persistence = persistence
        self.pipeline = pipeline
        self.log_sink = log_sink
        self.stt_connector = stt_connector
        self.settings = settings

        self.state = IngestState.IDLE
        self.session: Optional[CallSession] = None
        self.dropped_frames = 0
        self._inbound: Optional[InboundChannel] = None
        self._stt: Optional[STTConnection] = None
        self._alert_tasks: Set[asyncio.Task] = set()

    @property
    def call_sid(self) -> Optional[str]:
        return self.session.call_sid if self.session else None

    # ==================== lifecycle ====================

    async def run(self, inbound: InboundChannel):
        """Drive the session until either connection closes."""
        self._inbound = inbound
        self.state = IngestState.STREAM_OPEN
        logger.info("Media stream accepted")

        inbound_task = asyncio.create_task(self._consume_inbound(inbound))
        stt_task = asyncio.create_task(self._consume_stt())
        try:
            await asyncio.wait({inbound_task, stt_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (inbound_task, stt_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(inbound_task, stt_task, return_exceptions=True)
            await self.close()

    async def close(self):
        """Close both sides, wait for in-flight alerts, finalize the call."""
        if self.state == IngestState.CLOSED:
            return
        self.state = IngestState.CLOSED

        session = self.session
        if session is not None:
            session.connected = False

        if self._stt is not None:
            try:
                await self._stt.close()
                logger.info("STT connection closed")
            except Exception as e:
                logger.warning("Error closing STT connection: %s", e)

        if self._inbound is not None:
            try:
                await self._inbound.close()
            except Exception as e:
                # Already closed by the remote side
                logger.debug("Inbound close: %s", e)

        if self._alert_tasks:
            logger.info("Waiting for %d in-flight alert(s)", len(self._alert_tasks))
            await asyncio.shield(
                asyncio.gather(*list(self._alert_tasks), return_exceptions=True)
            )

        if session is None:
            logger.info("Stream closed before a call was bound")
            return

        ended_at = utcnow()
        duration = int((ended_at - session.started_at).total_seconds())
        try:
            await self.persistence.update_call_status(
                session.call_sid,
                CallStatus.COMPLETED,
                duration=duration,
                ended_at=ended_at,
            )
        except Exception as e:
            logger.error("Failed to finalize call %s: %s", session.call_sid, e)

        self.registry.close(session)
        self.log_sink.emit(
            LogLevel.INFO, COMPONENT, "Call session closed",
            call_sid=session.call_sid,
            metadata={"duration": duration, "dropped_frames": self.dropped_frames},
        )

    # ==================== inbound (voice provider) ====================

    async def _consume_inbound(self, inbound: InboundChannel):
        while True:
            try:
                raw = await inbound.receive_text()
            except WebSocketDisconnect as e:
                logger.info("Media WebSocket disconnected (code=%s)", e.code)
                return
            if not await self.handle_inbound_message(raw):
                return

    async def handle_inbound_message(self, raw: str) -> bool:
        """Process one media-stream message. Returns False on stream stop."""
        try:
            message = json.loads(raw)
            event = message.get("event")

            if event == "connected":
                logger.info("Media stream connected (protocol=%s)", message.get("protocol"))
            elif event == "start":
                await self._on_start(message)
            elif event == "media":
                payload = (message.get("media") or {}).get("payload")
                if payload:
                    await self._forward_audio(payload)
            elif event == "stop":
                logger.info("Media stream stopped for call %s", self.call_sid)
                return False
            else:
                logger.warning("Unknown media stream event: %s", event)
        except Exception as e:
            logger.error("Error processing media message: %s (raw=%.200s)", e, raw)
            self.log_sink.emit(
                LogLevel.ERROR, COMPONENT, "Malformed media message",
                call_sid=self.call_sid, metadata={"error": str(e)},
            )
        return True

    async def _on_start(self, message: dict):
        start = message.get("start") or {}
        call_sid = start.get("callSid")
        stream_sid = start.get("streamSid") or message.get("streamSid")
        params = start.get("customParameters") or {}
        if not call_sid:
            logger.warning("Stream start without callSid, ignoring")
            return

        logger.info(
            "Call started: call=%s stream=%s format=%s",
            call_sid, stream_sid, start.get("mediaFormat"),
        )

        contact = params.get("emergencyContact")
        try:
            call = await self.persistence.ensure_call(
                call_sid,
                emergency_contact=contact,
                phone_number=params.get("phoneNumber"),
            )
            await self.persistence.update_call_status(call_sid, CallStatus.IN_PROGRESS)
            contact = contact or call.emergency_contact
        except Exception as e:
            logger.error("Failed to record call start for %s: %s", call_sid, e)

        self.session = self.registry.open(
            call_sid,
            stream_sid=stream_sid,
            emergency_contact=contact or self.settings.default_emergency_contact,
            window_size=self.settings.transcript_window_size,
        )
        self.log_sink.emit(
            LogLevel.INFO, COMPONENT, "Call session started",
            call_sid=call_sid, metadata={"stream_sid": stream_sid},
        )

    async def _forward_audio(self, payload: str):
        session = self.session
        if (
            self.state != IngestState.CONNECTED
            or self._stt is None
            or (session is not None and not session.connected)
        ):
            self.dropped_frames += 1
            if self.dropped_frames % DROP_WARN_EVERY == 1:
                logger.warning(
                    "STT not ready, dropping audio (%d dropped so far)", self.dropped_frames
                )
            return
        try:
            await self._stt.send_audio(payload)
        except Exception as e:
            logger.error("Failed to forward audio to STT: %s", e)

    # ==================== STT provider ====================

    async def _consume_stt(self):
        try:
            self._stt = await self.stt_connector()
        except Exception as e:
            logger.error("STT connection failed: %s", e)
            self.log_sink.emit(
                LogLevel.ERROR, COMPONENT, "STT connection failed",
                call_sid=self.call_sid, metadata={"error": str(e)},
            )
            return

        if self.state == IngestState.CLOSED:
            return
        self.state = IngestState.CONNECTED
        logger.info("STT connected, forwarding audio")

        try:
            async for raw in self._stt:
                await self.handle_stt_message(raw)
        except Exception as e:
            logger.error("STT stream error: %s", e)
        logger.info("STT stream ended for call %s", self.call_sid)

    async def handle_stt_message(self, raw: str):
        try:
            event = TranscriptEvent.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.error("Malformed STT message: %s (raw=%.200s)", e, raw)
            return

        try:
            if event.message_type == STTMessageType.FINAL:
                await self._on_final(event)
            elif event.message_type == STTMessageType.PARTIAL:
                await self._on_partial(event)
            elif event.message_type == STTMessageType.SESSION_BEGINS:
                logger.info("STT session started: %s", event.session_id)
            elif event.message_type == STTMessageType.SESSION_TERMINATED:
                logger.info("STT session terminated: %s", event.session_id)
            elif event.message_type == STTMessageType.ERROR:
                logger.error("STT provider error: %s", event.error)
                self.log_sink.emit(
                    LogLevel.ERROR, COMPONENT, "STT provider error",
                    call_sid=self.call_sid, metadata={"error": event.error},
                )
            else:
                logger.debug("Unhandled STT message type: %s", event.message_type)
        except Exception as e:
            logger.error("Error handling STT event %s: %s", event.message_type, e)

    async def _on_partial(self, event: TranscriptEvent):
        if not event.text:
            return
        logger.debug("Partial transcript: %.50s", event.text)
        if self.settings.record_partial_transcripts and self.session is not None:
            await self.persistence.add_transcript(TranscriptLine(
                call_sid=self.session.call_sid,
                kind=TranscriptKind.PARTIAL,
                text=event.text,
                confidence=_clamp_confidence(event.confidence),
                speaker=Speaker.CALLER,
                audio_start=event.audio_start,
                audio_end=event.audio_end,
            ))

    async def _on_final(self, event: TranscriptEvent):
        text = event.text.strip()
        if not text:
            return
        session = self.session
        if session is None:
            logger.warning("Final transcript before stream start, dropped: %s", text)
            return

        confidence = _clamp_confidence(event.confidence)
        logger.info("Final transcript (%.2f): %s", confidence, text)

        session.add_transcript(text)
        context = session.recent_context(self.settings.alert_context_lines)

        line = TranscriptLine(
            call_sid=session.call_sid,
            kind=TranscriptKind.FINAL,
            text=text,
            confidence=confidence,
            speaker=Speaker.CALLER,
            audio_start=event.audio_start,
            audio_end=event.audio_end,
        )
        transcript_id: Optional[str] = None
        try:
            await self.persistence.add_transcript(line)
            transcript_id = line.id
        except Exception as e:
            logger.error("Failed to store transcript for call %s: %s", session.call_sid, e)

        if not self.pipeline.match(text):
            return

        task = asyncio.create_task(self.pipeline.process_final(
            session.call_sid,
            text,
            session.emergency_contact,
            context=context,
            confidence=confidence,
            transcript_id=transcript_id,
            session=session,
        ))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)
