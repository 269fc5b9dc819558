"""
Record models for calls, transcripts, keyword detections, SMS alerts
and system log entries.

Call status lifecycle:
  INITIATED → RINGING → IN_PROGRESS → COMPLETED
      ↓          ↓           ↓
          FAILED / BUSY / NO_ANSWER / CANCELED
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"


TERMINAL_STATUSES = {
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
}

# Valid status transitions; terminal states never move again
VALID_TRANSITIONS = {
    CallStatus.INITIATED: {CallStatus.RINGING, CallStatus.IN_PROGRESS} | TERMINAL_STATUSES,
    CallStatus.RINGING: {CallStatus.IN_PROGRESS} | TERMINAL_STATUSES,
    CallStatus.IN_PROGRESS: TERMINAL_STATUSES,
    CallStatus.COMPLETED: set(),
    CallStatus.FAILED: set(),
    CallStatus.BUSY: set(),
    CallStatus.NO_ANSWER: set(),
    CallStatus.CANCELED: set(),
}


def can_transition(current: CallStatus, new: CallStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, set())


class TranscriptKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"


class Speaker(str, Enum):
    CALLER = "caller"
    AGENT = "agent"


class AlertStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SmsStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class Call(BaseModel):
    id: str = Field(default_factory=new_id)
    call_sid: str
    phone_number: Optional[str] = None
    emergency_contact: Optional[str] = None
    status: CallStatus = CallStatus.INITIATED
    direction: str = "outbound"
    duration: int = Field(default=0, ge=0)
    answered_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TranscriptLine(BaseModel):
    id: str = Field(default_factory=new_id)
    call_sid: str
    kind: TranscriptKind = TranscriptKind.FINAL
    text: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    speaker: Speaker = Speaker.CALLER
    audio_start: Optional[int] = None
    audio_end: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class KeywordDetection(BaseModel):
    id: str = Field(default_factory=new_id)
    call_sid: str
    transcript_id: Optional[str] = None
    keywords: List[str] = Field(min_length=1)
    context_transcript: str
    confidence: float = 1.0
    alert_sent: bool = False
    alert_status: AlertStatus = AlertStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class SmsAlert(BaseModel):
    id: str = Field(default_factory=new_id)
    call_sid: str
    keyword_detection_id: Optional[str] = None
    recipient: str
    message: str
    message_sid: Optional[str] = None
    status: SmsStatus = SmsStatus.PENDING
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class SystemLogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    call_sid: Optional[str] = None
    level: LogLevel = LogLevel.INFO
    component: str = "unknown"
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# SMS rows only move forward; delivery callbacks may follow a send
SMS_TRANSITIONS = {
    SmsStatus.PENDING: {SmsStatus.SENT, SmsStatus.FAILED},
    SmsStatus.SENT: {SmsStatus.DELIVERED, SmsStatus.FAILED},
    SmsStatus.DELIVERED: set(),
    SmsStatus.FAILED: set(),
}
