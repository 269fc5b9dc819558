from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from callwatch.dependencies import get_persistence
from callwatch.models import (
    Call,
    KeywordDetection,
    SmsAlert,
    SmsStatus,
    SystemLogEntry,
    TranscriptLine,
)
from callwatch.services.persistence import PersistenceGateway

router = APIRouter()

# --- Models ---
class DashboardStats(BaseModel):
    total_calls: int
    calls_by_status: Dict[str, int]
    keyword_detections: int
    sms_sent: int
    sms_delivered: int
    sms_failed: int


class CallDetail(BaseModel):
    call: Call
    transcripts: List[TranscriptLine]
    detections: List[KeywordDetection]
    sms_alerts: List[SmsAlert]


class RecentAlert(BaseModel):
    detection_id: str
    call_sid: str
    keywords: List[str]
    context_transcript: str
    alert_status: str
    detected_at: datetime
    recipient: Optional[str] = None
    sms_status: Optional[str] = None
    error_message: Optional[str] = None

# --- Endpoints ---

@router.get("/stats", response_model=DashboardStats)
async def get_stats(persistence: PersistenceGateway = Depends(get_persistence)):
    stats = await persistence.get_stats()
    by_status = stats["calls_by_status"]
    sms = stats["sms_by_status"]

    return DashboardStats(
        total_calls=sum(by_status.values()),
        calls_by_status=by_status,
        keyword_detections=stats["detections"],
        # delivered messages were sent first
        sms_sent=sms.get(SmsStatus.SENT.value, 0) + sms.get(SmsStatus.DELIVERED.value, 0),
        sms_delivered=sms.get(SmsStatus.DELIVERED.value, 0),
        sms_failed=sms.get(SmsStatus.FAILED.value, 0),
    )


@router.get("/calls", response_model=List[Call])
async def get_calls(
    limit: int = Query(50, ge=1, le=500),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    return await persistence.list_calls(limit=limit)


@router.get("/calls/{call_sid}", response_model=CallDetail)
async def get_call_detail(call_sid: str, persistence: PersistenceGateway = Depends(get_persistence)):
    call = await persistence.get_call(call_sid)
    if call is None:
        raise HTTPException(status_code=404, detail="Call record not found")

    return CallDetail(
        call=call,
        transcripts=await persistence.list_transcripts(call_sid),
        detections=await persistence.list_detections(call_sid),
        sms_alerts=await persistence.list_sms_alerts(call_sid),
    )


@router.get("/alerts", response_model=List[RecentAlert])
async def get_recent_alerts(
    limit: int = Query(20, ge=1, le=200),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    detections = await persistence.list_recent_detections(limit=limit)
    alerts_by_call: Dict[str, List[SmsAlert]] = {}
    results = []

    for det in detections:
        if det.call_sid not in alerts_by_call:
            alerts_by_call[det.call_sid] = await persistence.list_sms_alerts(det.call_sid)
        sms = next(
            (a for a in alerts_by_call[det.call_sid] if a.keyword_detection_id == det.id),
            None,
        )
        results.append(RecentAlert(
            detection_id=det.id,
            call_sid=det.call_sid,
            keywords=det.keywords,
            context_transcript=det.context_transcript,
            alert_status=det.alert_status.value,
            detected_at=det.created_at,
            recipient=sms.recipient if sms else None,
            sms_status=sms.status.value if sms else None,
            error_message=sms.error_message if sms else None,
        ))
    return results


@router.get("/logs", response_model=List[SystemLogEntry])
async def get_logs(
    level: Optional[str] = None,
    component: Optional[str] = None,
    call_sid: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    persistence: PersistenceGateway = Depends(get_persistence),
):
    return await persistence.list_logs(
        level=level, component=component, call_sid=call_sid, limit=limit
    )
