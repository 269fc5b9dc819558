"""Tests for the dashboard API."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from callwatch.models import (
    AlertStatus,
    CallStatus,
    KeywordDetection,
    LogLevel,
    SmsAlert,
    SmsStatus,
    SystemLogEntry,
    TranscriptLine,
)


pytestmark = pytest.mark.asyncio


async def seed(persistence):
    await persistence.ensure_call("CA1", phone_number="+15551234567")
    await persistence.update_call_status("CA1", CallStatus.COMPLETED, duration=60)
    await persistence.ensure_call("CA2", phone_number="+15557654321")
    await persistence.update_call_status("CA2", CallStatus.IN_PROGRESS)

    await persistence.add_transcript(TranscriptLine(call_sid="CA1", text="hello"))
    await persistence.add_transcript(TranscriptLine(call_sid="CA1", text="help me"))

    detection = await persistence.add_detection(KeywordDetection(
        call_sid="CA1", keywords=["help"], context_transcript="help me"
    ))
    await persistence.resolve_detection(detection.id, AlertStatus.SUCCESS)
    alert = await persistence.add_sms_alert(SmsAlert(
        call_sid="CA1", keyword_detection_id=detection.id,
        recipient="+15550001111", message="body",
    ))
    await persistence.update_sms_alert(alert.id, SmsStatus.SENT, message_sid="SM1")
    await persistence.update_sms_alert(alert.id, SmsStatus.DELIVERED)

    failed = await persistence.add_detection(KeywordDetection(
        call_sid="CA2", keywords=["urgent"], context_transcript="urgent"
    ))
    await persistence.resolve_detection(failed.id, AlertStatus.FAILED)
    bad = await persistence.add_sms_alert(SmsAlert(
        call_sid="CA2", keyword_detection_id=failed.id,
        recipient="+1bad", message="body",
    ))
    await persistence.update_sms_alert(bad.id, SmsStatus.FAILED, error_message="invalid number")
    return detection, failed


async def test_dashboard_stats(client: AsyncClient, auth_headers, persistence):
    await seed(persistence)

    response = await client.get("/api/dashboard/stats", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["total_calls"] == 2
    assert data["calls_by_status"] == {"completed": 1, "in-progress": 1}
    assert data["keyword_detections"] == 2
    assert data["sms_sent"] == 1
    assert data["sms_delivered"] == 1
    assert data["sms_failed"] == 1


async def test_dashboard_calls(client: AsyncClient, auth_headers, persistence):
    await seed(persistence)

    response = await client.get("/api/dashboard/calls?limit=1", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1

    response = await client.get("/api/dashboard/calls", headers=auth_headers)
    assert {c["call_sid"] for c in response.json()} == {"CA1", "CA2"}


async def test_dashboard_call_detail(client: AsyncClient, auth_headers, persistence):
    await seed(persistence)

    response = await client.get("/api/dashboard/calls/CA1", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["call"]["status"] == "completed"
    assert data["call"]["duration"] == 60
    assert [t["text"] for t in data["transcripts"]] == ["hello", "help me"]
    assert data["detections"][0]["alert_sent"] is True
    assert data["sms_alerts"][0]["status"] == "delivered"


async def test_dashboard_call_detail_not_found(client: AsyncClient, auth_headers):
    response = await client.get("/api/dashboard/calls/CA-missing", headers=auth_headers)
    assert response.status_code == 404


async def test_dashboard_alerts(client: AsyncClient, auth_headers, persistence):
    detection, failed = await seed(persistence)

    response = await client.get("/api/dashboard/alerts", headers=auth_headers)
    assert response.status_code == 200
    by_id = {a["detection_id"]: a for a in response.json()}

    assert by_id[detection.id]["alert_status"] == "success"
    assert by_id[detection.id]["sms_status"] == "delivered"
    assert by_id[failed.id]["alert_status"] == "failed"
    assert by_id[failed.id]["sms_status"] == "failed"
    assert by_id[failed.id]["error_message"] == "invalid number"


async def test_dashboard_logs(client: AsyncClient, auth_headers, persistence):
    await persistence.add_log(SystemLogEntry(
        call_sid="CA1", level=LogLevel.ERROR, component="alert-pipeline", message="SMS failed"
    ))
    await persistence.add_log(SystemLogEntry(
        call_sid="CA1", level=LogLevel.INFO, component="ingest", message="started"
    ))

    response = await client.get(
        "/api/dashboard/logs", params={"level": "error"}, headers=auth_headers
    )
    assert [e["message"] for e in response.json()] == ["SMS failed"]

    response = await client.get(
        "/api/dashboard/logs", params={"call_sid": "CA1", "component": "ingest"},
        headers=auth_headers,
    )
    assert [e["message"] for e in response.json()] == ["started"]


async def test_dashboard_stats_from_counters(client: AsyncClient, auth_headers, persistence, monkeypatch):
    """Stats come from store counters, not from scanning call records."""
    await seed(persistence)
    monkeypatch.setattr(persistence, "list_calls", AsyncMock(side_effect=AssertionError))
    monkeypatch.setattr(persistence, "list_sms_alerts", AsyncMock(side_effect=AssertionError))

    response = await client.get("/api/dashboard/stats", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["total_calls"] == 2
