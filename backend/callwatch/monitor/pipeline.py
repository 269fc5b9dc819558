"""
Alert pipeline — final transcript → keyword detection → SMS alert.

This is the one place where a matched transcript turns into persisted
detection and SMS records. Both the live media stream and the HTTP
transcript endpoint go through it.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from callwatch.config import Settings, settings as default_settings
from callwatch.models import (
    AlertStatus,
    KeywordDetection,
    LogLevel,
    SmsAlert,
    SmsStatus,
    Speaker,
    TranscriptKind,
    TranscriptLine,
)
from callwatch.monitor.alerts import AlertTooLongError, compose_alert
from callwatch.monitor.dispatcher import DeliveryOutcome, SMSDispatcher
from callwatch.monitor.keywords import match_keywords
from callwatch.monitor.session import CallSession
from callwatch.services.log_sink import SystemLogSink
from callwatch.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

COMPONENT = "alert-pipeline"


@dataclass
class AlertResult:
    keywords: List[str] = field(default_factory=list)
    detection_id: Optional[str] = None
    sms_alert_id: Optional[str] = None
    outcome: Optional[DeliveryOutcome] = None
    suppressed: bool = False

    @property
    def alert_sent(self) -> bool:
        return self.outcome is not None and self.outcome.success


class AlertPipeline:
    def __init__(
        self,
        persistence: PersistenceGateway,
        dispatcher: SMSDispatcher,
        log_sink: SystemLogSink,
        settings: Settings = default_settings,
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.log_sink = log_sink
        self.settings = settings

    def match(self, text: str) -> List[str]:
        return match_keywords(text, self.settings.trigger_keywords)

    async def process_final(
        self,
        call_sid: str,
        text: str,
        emergency_contact: Optional[str],
        context: Sequence[str] = (),
        confidence: float = 1.0,
        transcript_id: Optional[str] = None,
        session: Optional[CallSession] = None,
    ) -> AlertResult:
        """Evaluate a final transcript and, on a match, send one alert.

        Never raises: store and provider failures are logged and reflected
        in the returned AlertResult.
        """
        keywords = self.match(text)
        if not keywords:
            logger.debug("No trigger words in: %s", text)
            return AlertResult()

        result = AlertResult(keywords=keywords)
        cooldown = self.settings.alert_cooldown_seconds
        if session is not None and session.in_cooldown(cooldown):
            logger.info("Call %s: alert suppressed by %.0fs cooldown", call_sid, cooldown)
            self.log_sink.emit(
                LogLevel.INFO, COMPONENT, "Alert suppressed by cooldown",
                call_sid=call_sid, metadata={"keywords": keywords, "transcript": text},
            )
            result.suppressed = True
            return result
        if session is not None:
            session.mark_alerted()

        logger.warning("TRIGGER WORDS DETECTED on call %s: %s", call_sid, keywords)
        self.log_sink.emit(
            LogLevel.WARN, COMPONENT, "Trigger words detected",
            call_sid=call_sid,
            metadata={"keywords": keywords, "transcript": text, "confidence": confidence},
        )

        detection = KeywordDetection(
            call_sid=call_sid,
            transcript_id=transcript_id,
            keywords=keywords,
            context_transcript=text,
            confidence=confidence,
        )
        try:
            await self.persistence.add_detection(detection)
            result.detection_id = detection.id
        except Exception as e:
            logger.error("Failed to store keyword detection for call %s: %s", call_sid, e)

        try:
            body = compose_alert(
                text,
                keywords,
                call_sid,
                context,
                max_context=self.settings.alert_context_lines,
                max_length=self.settings.sms_max_length,
            )
        except AlertTooLongError as e:
            logger.error("Call %s: cannot compose alert: %s", call_sid, e)
            self.log_sink.emit(LogLevel.ERROR, COMPONENT, str(e), call_sid=call_sid)
            result.outcome = DeliveryOutcome(success=False, error=str(e))
            await self._resolve_detection(result.detection_id, AlertStatus.FAILED)
            return result

        recipient = emergency_contact or self.settings.default_emergency_contact
        sms_alert = SmsAlert(
            call_sid=call_sid,
            keyword_detection_id=result.detection_id,
            recipient=recipient,
            message=body,
        )
        try:
            await self.persistence.add_sms_alert(sms_alert)
            result.sms_alert_id = sms_alert.id
        except Exception as e:
            logger.error("Failed to store SMS alert for call %s: %s", call_sid, e)

        outcome = await self.dispatcher.send(recipient, body)
        result.outcome = outcome

        if outcome.success:
            self.log_sink.emit(
                LogLevel.INFO, COMPONENT, "Emergency SMS sent",
                call_sid=call_sid,
                metadata={"message_sid": outcome.message_sid, "recipient": recipient},
            )
        else:
            self.log_sink.emit(
                LogLevel.ERROR, COMPONENT, "Emergency SMS failed",
                call_sid=call_sid,
                metadata={"error": outcome.error, "recipient": recipient},
            )

        if result.sms_alert_id:
            try:
                await self.persistence.update_sms_alert(
                    result.sms_alert_id,
                    SmsStatus.SENT if outcome.success else SmsStatus.FAILED,
                    message_sid=outcome.message_sid,
                    error_message=outcome.error,
                )
            except Exception as e:
                logger.error("Failed to update SMS alert %s: %s", result.sms_alert_id, e)

        await self._resolve_detection(
            result.detection_id,
            AlertStatus.SUCCESS if outcome.success else AlertStatus.FAILED,
        )
        return result

    async def _resolve_detection(self, detection_id: Optional[str], status: AlertStatus):
        if not detection_id:
            return
        try:
            await self.persistence.resolve_detection(detection_id, status)
        except Exception as e:
            logger.error("Failed to update keyword detection %s: %s", detection_id, e)

    async def submit_transcript(
        self,
        call_sid: str,
        text: str,
        confidence: float = 1.0,
        speaker: Speaker = Speaker.CALLER,
        emergency_contact: Optional[str] = None,
    ) -> AlertResult:
        """Record a final transcript received outside a media stream and evaluate it.

        Agent lines are stored but never matched.
        """
        call = await self.persistence.ensure_call(
            call_sid, emergency_contact=emergency_contact
        )
        line = TranscriptLine(
            call_sid=call_sid,
            kind=TranscriptKind.FINAL,
            text=text,
            confidence=confidence,
            speaker=speaker,
        )
        await self.persistence.add_transcript(line)

        if speaker != Speaker.CALLER:
            return AlertResult()

        context = [t.text for t in await self.persistence.list_transcripts(call_sid)
                   if t.kind == TranscriptKind.FINAL and t.speaker == Speaker.CALLER]
        return await self.process_final(
            call_sid,
            text,
            emergency_contact or call.emergency_contact,
            context=context,
            confidence=confidence,
            transcript_id=line.id,
        )
