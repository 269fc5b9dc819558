"""Tests for access audit and auth middleware."""

import json
import logging

import pytest

from callwatch.config import settings


pytestmark = pytest.mark.asyncio


async def test_audit_logs_call_data_access(client, auth_headers, caplog):
    """Audit middleware logs access to call-data endpoint paths."""
    with caplog.at_level(logging.INFO, logger="callwatch.audit"):
        response = await client.get("/api/dashboard/calls", headers=auth_headers)
    assert response.status_code == 200

    audit_logs = [r for r in caplog.records if r.name == "callwatch.audit"]
    assert len(audit_logs) == 1

    entry = json.loads(audit_logs[0].message)
    assert entry["event"] == "call_data_access"
    assert entry["method"] == "GET"
    assert entry["path"] == "/api/dashboard/calls"
    assert entry["status_code"] == 200
    assert entry["authenticated"] is True
    assert "timestamp" in entry
    assert "duration_ms" in entry
    assert "caller_ip" in entry
    # The key itself is never written to the audit trail
    assert "test-key" not in audit_logs[0].message


async def test_audit_records_rejected_requests(client, caplog):
    with caplog.at_level(logging.INFO, logger="callwatch.audit"):
        await client.get("/api/monitor/sessions")

    entry = json.loads([r for r in caplog.records if r.name == "callwatch.audit"][0].message)
    assert entry["status_code"] == 401
    assert entry["authenticated"] is False


async def test_audit_skips_other_paths(client, caplog):
    """Audit middleware does not log health checks or provider webhooks."""
    with caplog.at_level(logging.INFO, logger="callwatch.audit"):
        await client.get("/health")
        await client.post("/api/voice/status", data={"CallSid": "CA1", "CallStatus": "ringing"})

    audit_logs = [r for r in caplog.records if r.name == "callwatch.audit"]
    assert len(audit_logs) == 0


async def test_auth_rejects_no_key(client):
    response = await client.get("/api/dashboard/stats")
    assert response.status_code == 401


async def test_auth_rejects_invalid_key(client):
    response = await client.get(
        "/api/dashboard/stats",
        headers={"X-API-Key": "wrong-key"},
    )
    assert response.status_code == 401


async def test_auth_accepts_valid_key(client, auth_headers):
    response = await client.get("/api/dashboard/stats", headers=auth_headers)
    assert response.status_code == 200


async def test_auth_unconfigured_key_refuses(client, auth_headers, monkeypatch):
    """With no API key configured, protected endpoints are unavailable."""
    monkeypatch.setattr(settings, "api_key", "")
    response = await client.get("/api/dashboard/stats", headers=auth_headers)
    assert response.status_code == 503
