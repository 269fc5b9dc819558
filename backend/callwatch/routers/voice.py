import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, Security, WebSocket
from pydantic import BaseModel
from twilio.twiml.voice_response import Connect, VoiceResponse

from callwatch.config import settings
from callwatch.dependencies import get_log_sink, get_persistence
from callwatch.middleware.auth import verify_api_key
from callwatch.models import CallStatus, LogLevel, SmsStatus, TERMINAL_STATUSES, utcnow
from callwatch.monitor.ingest import TranscriptIngestLoop
from callwatch.services.log_sink import SystemLogSink
from callwatch.services.persistence import PersistenceGateway
from callwatch.services.telephony import TelephonyError

router = APIRouter()
logger = logging.getLogger(__name__)

GREETING = (
    "Hello! You've reached our AI monitoring system. I'm here to assist you "
    "and will be listening for any requests for help. Please speak naturally."
)
ERROR_MESSAGE = (
    "Sorry, there was a technical error. If this is an emergency, "
    "please hang up and dial emergency services. Goodbye!"
)

# Twilio MessageStatus values that change our SMS record
SMS_STATUS_MAP = {
    "sent": SmsStatus.SENT,
    "delivered": SmsStatus.DELIVERED,
    "undelivered": SmsStatus.FAILED,
    "failed": SmsStatus.FAILED,
}


class CreateCallRequest(BaseModel):
    """Request model for placing a monitored call."""
    phone_number: str
    emergency_contact: Optional[str] = None


class CreateCallResponse(BaseModel):
    """Response model for create call endpoint."""
    call_sid: str
    status: str
    phone_number: str
    emergency_contact: Optional[str] = None


def _public_url(request: Request, path: str, scheme: str = "https") -> str:
    base = settings.public_base_url.rstrip("/")
    if not base:
        base = f"https://{request.headers.get('host', request.url.netloc)}"
    if scheme == "wss":
        base = base.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
    return f"{base}{path}"


@router.post("/calls", response_model=CreateCallResponse, dependencies=[Security(verify_api_key)])
async def create_call(
    body: CreateCallRequest,
    request: Request,
    persistence: PersistenceGateway = Depends(get_persistence),
    log_sink: SystemLogSink = Depends(get_log_sink),
):
    """
    Place an outbound call and record it. The callee's audio is streamed
    back to /api/voice/stream for monitoring.
    """
    if not body.phone_number.strip():
        raise HTTPException(status_code=400, detail="Phone number is required")
    if not settings.public_base_url:
        raise HTTPException(status_code=503, detail="PUBLIC_BASE_URL not configured")

    telephony = request.app.state.telephony
    emergency_contact = body.emergency_contact or settings.default_emergency_contact or None

    try:
        result = await telephony.place_call(
            body.phone_number,
            twiml_url=_public_url(request, "/api/voice/twiml"),
            status_callback_url=_public_url(request, "/api/voice/status"),
        )
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except TelephonyError as e:
        log_sink.emit(LogLevel.ERROR, "voice", "Call initiation failed", metadata={"error": str(e)})
        raise HTTPException(status_code=502, detail=str(e))

    call = await persistence.ensure_call(
        result["sid"],
        phone_number=body.phone_number,
        emergency_contact=emergency_contact,
        direction="outbound",
    )
    log_sink.emit(
        LogLevel.INFO, "voice", "Call initiated",
        call_sid=call.call_sid, metadata={"to": body.phone_number},
    )
    logger.info("Created call %s to %s", call.call_sid, body.phone_number)

    return CreateCallResponse(
        call_sid=call.call_sid,
        status=call.status.value,
        phone_number=body.phone_number,
        emergency_contact=call.emergency_contact,
    )


@router.post("/twiml")
async def twiml(request: Request, persistence: PersistenceGateway = Depends(get_persistence)):
    """Answer document for a monitored call: greet, then stream audio to us."""
    try:
        form = await request.form()
        call_sid = form.get("CallSid")
        logger.info("TwiML requested for call %s", call_sid)

        contact = settings.default_emergency_contact
        if call_sid:
            call = await persistence.ensure_call(
                call_sid, phone_number=form.get("To"), direction=form.get("Direction")
            )
            contact = call.emergency_contact or contact

        response = VoiceResponse()
        response.say(GREETING, voice="alice")
        connect = Connect()
        stream = connect.stream(url=_public_url(request, "/api/voice/stream", scheme="wss"))
        if contact:
            stream.parameter(name="emergencyContact", value=contact)
        response.append(connect)
        return Response(content=str(response), media_type="application/xml")
    except Exception as e:
        logger.error("Failed to build TwiML: %s", e)
        response = VoiceResponse()
        response.say(ERROR_MESSAGE, voice="alice")
        response.hangup()
        return Response(content=str(response), media_type="application/xml", status_code=500)


@router.post("/status")
async def call_status(
    request: Request,
    persistence: PersistenceGateway = Depends(get_persistence),
    log_sink: SystemLogSink = Depends(get_log_sink),
):
    """Twilio call status callback. Records call lifecycle events."""
    form = await request.form()
    call_sid = form.get("CallSid")
    raw_status = form.get("CallStatus", "")
    logger.info("Twilio status update: call=%s status=%s", call_sid, raw_status)

    if not call_sid:
        raise HTTPException(status_code=400, detail="CallSid is required")
    try:
        status = CallStatus(raw_status)
    except ValueError:
        logger.warning("Unknown call status %r for call %s", raw_status, call_sid)
        return {"received": True, "applied": False}

    await persistence.ensure_call(
        call_sid, phone_number=form.get("To"), direction=form.get("Direction")
    )
    duration = form.get("CallDuration")
    call = await persistence.update_call_status(
        call_sid,
        status,
        duration=int(duration) if duration and duration.isdigit() else None,
        answered_by=form.get("AnsweredBy"),
        ended_at=utcnow() if status in TERMINAL_STATUSES else None,
    )

    level = LogLevel.ERROR if status == CallStatus.FAILED else LogLevel.INFO
    log_sink.emit(level, "call-status", f"Call {status.value}", call_sid=call_sid)
    return {"received": True, "applied": call is not None and call.status == status}


@router.post("/sms-status")
async def sms_status(
    request: Request,
    persistence: PersistenceGateway = Depends(get_persistence),
):
    """Twilio message status callback. Tracks delivery of alert SMS."""
    form = await request.form()
    message_sid = form.get("MessageSid")
    raw_status = form.get("MessageStatus", "")
    logger.info("Twilio SMS status: message=%s status=%s", message_sid, raw_status)

    status = SMS_STATUS_MAP.get(raw_status)
    if not message_sid or status is None:
        return {"received": True, "applied": False}

    alert = await persistence.get_sms_alert_by_message_sid(message_sid)
    if alert is None:
        logger.warning("SMS status for unknown message %s", message_sid)
        return {"received": True, "applied": False}

    updated = await persistence.update_sms_alert(
        alert.id,
        status,
        error_message=form.get("ErrorMessage") or form.get("ErrorCode"),
    )
    return {"received": True, "applied": updated is not None and updated.status == status}


@router.websocket("/stream")
async def media_stream(websocket: WebSocket):
    """Media stream for one call; runs a transcript ingest loop until either side closes."""
    await websocket.accept()
    state = websocket.app.state
    loop = TranscriptIngestLoop(
        registry=state.registry,
        persistence=state.persistence,
        pipeline=state.pipeline,
        log_sink=state.log_sink,
        stt_connector=state.stt_connector,
    )
    await loop.run(websocket)
