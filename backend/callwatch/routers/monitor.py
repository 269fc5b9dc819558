import logging
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from callwatch.config import settings
from callwatch.dependencies import get_log_sink, get_pipeline, get_registry
from callwatch.models import LogLevel, Speaker
from callwatch.monitor.alerts import compose_test_message
from callwatch.monitor.pipeline import AlertPipeline
from callwatch.monitor.session import SessionRegistry
from callwatch.services.log_sink import SystemLogSink

router = APIRouter()
logger = logging.getLogger(__name__)


class TranscriptSubmission(BaseModel):
    """A final transcript delivered over HTTP instead of a media stream."""
    text: str = Field(min_length=1)
    call_sid: Optional[str] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    speaker: Speaker = Speaker.CALLER
    emergency_contact: Optional[str] = None


class TranscriptResult(BaseModel):
    call_sid: str
    keywords_detected: List[str]
    alert_sent: bool
    detection_id: Optional[str] = None
    sms_alert_id: Optional[str] = None
    error: Optional[str] = None
    suppressed: bool = False


class KeywordCheck(BaseModel):
    text: str


class KeywordCheckResult(BaseModel):
    keywords_detected: List[str]
    trigger_keywords: List[str]


class SMSCheckRequest(BaseModel):
    to: Optional[str] = None


class SMSCheckResult(BaseModel):
    success: bool
    recipient: str
    message_sid: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class LiveSession(BaseModel):
    call_sid: str
    stream_sid: Optional[str] = None
    emergency_contact: Optional[str] = None
    started_at: datetime
    connected: bool
    transcript_lines: int


@router.post("/transcripts", response_model=TranscriptResult)
async def submit_transcript(
    body: TranscriptSubmission,
    pipeline: AlertPipeline = Depends(get_pipeline),
):
    """Evaluate a final transcript and alert the emergency contact on a match."""
    call_sid = body.call_sid or f"http-{uuid.uuid4().hex}"
    result = await pipeline.submit_transcript(
        call_sid,
        body.text.strip(),
        confidence=body.confidence,
        speaker=body.speaker,
        emergency_contact=body.emergency_contact,
    )
    return TranscriptResult(
        call_sid=call_sid,
        keywords_detected=result.keywords,
        alert_sent=result.alert_sent,
        detection_id=result.detection_id,
        sms_alert_id=result.sms_alert_id,
        error=result.outcome.error if result.outcome else None,
        suppressed=result.suppressed,
    )


@router.post("/check", response_model=KeywordCheckResult)
async def check_keywords(body: KeywordCheck, pipeline: AlertPipeline = Depends(get_pipeline)):
    """Dry run: which trigger words would this text match."""
    return KeywordCheckResult(
        keywords_detected=pipeline.match(body.text),
        trigger_keywords=pipeline.settings.trigger_keywords,
    )


@router.get("/sessions", response_model=List[LiveSession])
async def live_sessions(registry: SessionRegistry = Depends(get_registry)):
    return [
        LiveSession(
            call_sid=s.call_sid,
            stream_sid=s.stream_sid,
            emergency_contact=s.emergency_contact,
            started_at=s.started_at,
            connected=s.connected,
            transcript_lines=len(s.transcripts),
        )
        for s in registry.active()
    ]


@router.post("/test-sms", response_model=SMSCheckResult)
async def send_test_sms(
    body: SMSCheckRequest,
    pipeline: AlertPipeline = Depends(get_pipeline),
    log_sink: SystemLogSink = Depends(get_log_sink),
):
    """Send a test SMS through the alert dispatcher to check delivery.

    Refuses with 400 and a credential presence report when Twilio is not
    configured.
    """
    dispatcher = pipeline.dispatcher
    if not dispatcher.configured:
        raise HTTPException(status_code=400, detail={
            "error": "Missing Twilio credentials",
            "sid_present": bool(settings.twilio_account_sid),
            "token_present": bool(settings.twilio_auth_token),
            "phone_present": bool(settings.twilio_phone_number),
        })

    recipient = body.to or settings.default_emergency_contact
    if not recipient:
        raise HTTPException(status_code=400, detail="No recipient or default emergency contact")

    outcome = await dispatcher.send(recipient, compose_test_message())
    log_sink.emit(
        LogLevel.INFO if outcome.success else LogLevel.ERROR,
        "test-sms",
        "Test SMS sent" if outcome.success else "Test SMS failed",
        metadata={"recipient": recipient, "error": outcome.error},
    )
    return SMSCheckResult(
        success=outcome.success,
        recipient=recipient,
        message_sid=outcome.message_sid,
        status=outcome.status,
        error=outcome.error,
    )
