"""
Per-call live session state and the registry that owns it.

A CallSession exists only while a media stream is open for the call.
The registry is created once per application and passed to the handlers
that need it.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional

from callwatch.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 10


@dataclass
class CallSession:
    call_sid: str
    stream_sid: Optional[str] = None
    emergency_contact: Optional[str] = None
    window_size: int = DEFAULT_WINDOW_SIZE
    connected: bool = True
    started_at: datetime = field(default_factory=utcnow)
    last_alert_at: Optional[float] = None
    transcripts: Deque[str] = field(init=False)

    def __post_init__(self):
        self.transcripts = deque(maxlen=self.window_size)

    def add_transcript(self, text: str):
        """Append a final transcript line, evicting the oldest when full."""
        self.transcripts.append(text)

    def recent_context(self, n: int = 5) -> List[str]:
        if n <= 0:
            return []
        return list(self.transcripts)[-n:]

    def in_cooldown(self, cooldown_seconds: float, now: Optional[float] = None) -> bool:
        if cooldown_seconds <= 0 or self.last_alert_at is None:
            return False
        now = time.monotonic() if now is None else now
        return now - self.last_alert_at < cooldown_seconds

    def mark_alerted(self, now: Optional[float] = None):
        self.last_alert_at = time.monotonic() if now is None else now


class SessionRegistry:
    """Maps call identifiers to their live CallSession."""

    def __init__(self):
        self._sessions: Dict[str, CallSession] = {}

    def open(
        self,
        call_sid: str,
        stream_sid: Optional[str] = None,
        emergency_contact: Optional[str] = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> CallSession:
        existing = self._sessions.get(call_sid)
        if existing is not None:
            logger.warning("Replacing live session for call %s", call_sid)
            existing.connected = False

        session = CallSession(
            call_sid=call_sid,
            stream_sid=stream_sid,
            emergency_contact=emergency_contact,
            window_size=window_size,
        )
        self._sessions[call_sid] = session
        logger.info("Session opened for call %s (stream %s)", call_sid, stream_sid)
        return session

    def get(self, call_sid: str) -> Optional[CallSession]:
        return self._sessions.get(call_sid)

    def close(self, session: CallSession):
        """Mark a session disconnected and drop it if it is still registered."""
        session.connected = False
        if self._sessions.get(session.call_sid) is session:
            del self._sessions[session.call_sid]
            logger.info("Session closed for call %s", session.call_sid)

    def active(self) -> List[CallSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
