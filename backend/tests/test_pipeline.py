"""Tests for the alert pipeline: final transcript to detection to SMS."""

from unittest.mock import AsyncMock

import pytest

from callwatch.models import AlertStatus, LogLevel, SmsStatus, Speaker
from callwatch.monitor.dispatcher import DeliveryOutcome
from callwatch.monitor.pipeline import AlertPipeline
from callwatch.monitor.session import CallSession

from conftest import EMERGENCY_CONTACT


pytestmark = pytest.mark.asyncio


async def test_match_sends_one_alert(pipeline, persistence, dispatcher):
    result = await pipeline.process_final(
        "CA1", "I have an emergency, please support me", "+15552223333",
        context=["hello", "I have an emergency, please support me"],
        confidence=0.9,
    )

    assert result.keywords == ["emergency", "support"]
    assert result.alert_sent is True
    dispatcher.send.assert_awaited_once()
    recipient, body = dispatcher.send.await_args.args
    assert recipient == "+15552223333"
    assert "Keywords detected: emergency, support" in body
    assert "Call ID: CA1" in body
    assert "Recent conversation:\nhello\n" in body

    detections = await persistence.list_detections("CA1")
    assert len(detections) == 1
    assert detections[0].keywords == ["emergency", "support"]
    assert detections[0].context_transcript == "I have an emergency, please support me"
    assert detections[0].alert_status == AlertStatus.SUCCESS
    assert detections[0].alert_sent is True

    alerts = await persistence.list_sms_alerts("CA1")
    assert len(alerts) == 1
    assert alerts[0].status == SmsStatus.SENT
    assert alerts[0].message_sid == "SM123"
    assert alerts[0].keyword_detection_id == detections[0].id
    assert alerts[0].message == body


async def test_no_match_records_nothing(pipeline, persistence, dispatcher):
    result = await pipeline.process_final("CA1", "the weather is lovely", EMERGENCY_CONTACT)

    assert result.keywords == []
    assert result.alert_sent is False
    dispatcher.send.assert_not_awaited()
    assert await persistence.list_detections("CA1") == []
    assert await persistence.list_sms_alerts("CA1") == []


async def test_failed_send_marks_records_failed(pipeline, persistence, dispatcher):
    dispatcher.send = AsyncMock(return_value=DeliveryOutcome(
        success=False, error="Twilio error 21211: invalid number"
    ))

    result = await pipeline.process_final("CA1", "help", EMERGENCY_CONTACT)

    assert result.alert_sent is False
    detection = (await persistence.list_detections("CA1"))[0]
    assert detection.alert_status == AlertStatus.FAILED
    assert detection.alert_sent is False
    alert = (await persistence.list_sms_alerts("CA1"))[0]
    assert alert.status == SmsStatus.FAILED
    assert alert.error_message == "Twilio error 21211: invalid number"


async def test_falls_back_to_default_contact(pipeline, dispatcher):
    await pipeline.process_final("CA1", "help", None)
    assert dispatcher.send.await_args.args[0] == EMERGENCY_CONTACT


async def test_outcome_logged_to_sink(pipeline, persistence, log_sink):
    await pipeline.process_final("CA1", "urgent problem", EMERGENCY_CONTACT)
    await log_sink.flush()

    entries = await persistence.list_logs(call_sid="CA1", component="alert-pipeline")
    levels = {e.level for e in entries}
    assert LogLevel.WARN in levels
    assert any(e.message == "Emergency SMS sent" for e in entries)


async def test_alert_too_long_fails_detection(persistence, dispatcher, log_sink, test_settings):
    test_settings.sms_max_length = 200
    pipeline = AlertPipeline(persistence, dispatcher, log_sink, settings=test_settings)

    result = await pipeline.process_final("CA1", "help " * 100, EMERGENCY_CONTACT)

    assert result.alert_sent is False
    assert result.outcome.error
    dispatcher.send.assert_not_awaited()
    detection = (await persistence.list_detections("CA1"))[0]
    assert detection.alert_status == AlertStatus.FAILED
    assert await persistence.list_sms_alerts("CA1") == []


async def test_store_failure_still_sends(pipeline, persistence, dispatcher):
    persistence.add_detection = AsyncMock(side_effect=ConnectionError("redis down"))

    result = await pipeline.process_final("CA1", "help", EMERGENCY_CONTACT)

    assert result.detection_id is None
    assert result.alert_sent is True
    dispatcher.send.assert_awaited_once()


async def test_cooldown_suppresses_repeat_alerts(persistence, dispatcher, log_sink, test_settings):
    test_settings.alert_cooldown_seconds = 60
    pipeline = AlertPipeline(persistence, dispatcher, log_sink, settings=test_settings)
    session = CallSession(call_sid="CA1", emergency_contact=EMERGENCY_CONTACT)

    first = await pipeline.process_final("CA1", "help", EMERGENCY_CONTACT, session=session)
    second = await pipeline.process_final("CA1", "help again", EMERGENCY_CONTACT, session=session)

    assert first.alert_sent is True
    assert second.suppressed is True
    assert second.keywords == ["help"]
    assert dispatcher.send.await_count == 1
    assert len(await persistence.list_detections("CA1")) == 1


async def test_every_match_alerts_without_cooldown(pipeline, dispatcher):
    session = CallSession(call_sid="CA1")
    for text in ("help", "help", "emergency"):
        await pipeline.process_final("CA1", text, EMERGENCY_CONTACT, session=session)
    assert dispatcher.send.await_count == 3


async def test_submit_transcript_records_and_alerts(pipeline, persistence):
    await pipeline.submit_transcript("CA9", "hello there")
    result = await pipeline.submit_transcript(
        "CA9", "I need help", confidence=0.8, emergency_contact="+15554445555"
    )

    assert result.alert_sent is True
    call = await persistence.get_call("CA9")
    assert call.emergency_contact == "+15554445555"
    assert [t.text for t in await persistence.list_transcripts("CA9")] == [
        "hello there", "I need help"
    ]
    alert = (await persistence.list_sms_alerts("CA9"))[0]
    assert alert.recipient == "+15554445555"
    assert "Recent conversation:\nhello there\nI need help" in alert.message
    detection = (await persistence.list_detections("CA9"))[0]
    assert detection.transcript_id == (await persistence.list_transcripts("CA9"))[1].id


async def test_agent_lines_never_alert(pipeline, persistence, dispatcher):
    result = await pipeline.submit_transcript("CA9", "how can I help you?", speaker=Speaker.AGENT)

    assert result.keywords == []
    dispatcher.send.assert_not_awaited()
    assert len(await persistence.list_transcripts("CA9")) == 1
