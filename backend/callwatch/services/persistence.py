"""
Persistence gateway for call audit records.

The gateway is an append-only record sink: calls, transcript lines,
keyword detections, SMS alerts and system log entries. Records are stored
as JSON documents in Redis with per-call and time-ordered indexes.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel

from callwatch.models import (
    AlertStatus,
    Call,
    CallStatus,
    KeywordDetection,
    SMS_TRANSITIONS,
    SmsAlert,
    SmsStatus,
    SystemLogEntry,
    TranscriptLine,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

STATS_CALLS = "stats:calls_by_status"
STATS_SMS = "stats:sms_by_status"
STATS_DETECTIONS = "stats:detections"


class PersistenceGateway(ABC):
    """Abstract interface for the call record store."""

    @abstractmethod
    async def ping(self) -> bool:
        pass

    # ==================== Calls ====================

    @abstractmethod
    async def ensure_call(self, call_sid: str, **fields: Any) -> Call:
        """
        Return the call record for call_sid, creating it if missing.
        On an existing record, only fields that are still empty are filled.
        """
        pass

    @abstractmethod
    async def get_call(self, call_sid: str) -> Optional[Call]:
        pass

    @abstractmethod
    async def update_call_status(
        self,
        call_sid: str,
        status: CallStatus,
        duration: Optional[int] = None,
        answered_by: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Call]:
        """
        Apply a monotonic status update. Reverting or out-of-order updates
        leave the status untouched. Returns None if the call is unknown.
        """
        pass

    @abstractmethod
    async def list_calls(self, limit: int = 50) -> List[Call]:
        pass

    # ==================== Transcripts ====================

    @abstractmethod
    async def add_transcript(self, line: TranscriptLine) -> TranscriptLine:
        pass

    @abstractmethod
    async def list_transcripts(self, call_sid: str) -> List[TranscriptLine]:
        pass

    # ==================== Keyword detections ====================

    @abstractmethod
    async def add_detection(self, detection: KeywordDetection) -> KeywordDetection:
        pass

    @abstractmethod
    async def get_detection(self, detection_id: str) -> Optional[KeywordDetection]:
        pass

    @abstractmethod
    async def resolve_detection(
        self, detection_id: str, status: AlertStatus
    ) -> Optional[KeywordDetection]:
        """Move a pending detection to success or failed, exactly once."""
        pass

    @abstractmethod
    async def list_detections(self, call_sid: str) -> List[KeywordDetection]:
        pass

    @abstractmethod
    async def list_recent_detections(self, limit: int = 20) -> List[KeywordDetection]:
        pass

    # ==================== SMS alerts ====================

    @abstractmethod
    async def add_sms_alert(self, alert: SmsAlert) -> SmsAlert:
        pass

    @abstractmethod
    async def get_sms_alert(self, alert_id: str) -> Optional[SmsAlert]:
        pass

    @abstractmethod
    async def get_sms_alert_by_message_sid(self, message_sid: str) -> Optional[SmsAlert]:
        pass

    @abstractmethod
    async def update_sms_alert(
        self,
        alert_id: str,
        status: SmsStatus,
        message_sid: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[SmsAlert]:
        pass

    @abstractmethod
    async def list_sms_alerts(self, call_sid: str) -> List[SmsAlert]:
        pass

    # ==================== System logs ====================

    @abstractmethod
    async def add_log(self, entry: SystemLogEntry) -> SystemLogEntry:
        pass

    @abstractmethod
    async def list_logs(
        self,
        level: Optional[str] = None,
        component: Optional[str] = None,
        call_sid: Optional[str] = None,
        limit: int = 100,
    ) -> List[SystemLogEntry]:
        pass



    # ==================== Stats ====================

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """All-time counters: calls by status, detections, SMS alerts by status."""
        pass


class RedisPersistence(PersistenceGateway):
    """Redis-backed record store.

    Updates to an existing record run as WATCH/MULTI transactions, so
    concurrent webhook and stream handlers never overwrite each other's
    fields. Counters for the dashboard are kept in the same transaction
    as the status change they count.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    async def ping(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    # ==================== helpers ====================

    async def _save(self, key: str, record: BaseModel):
        await self.redis.set(key, record.model_dump_json())

    async def _load(self, key: str, model: Type[RecordT]) -> Optional[RecordT]:
        data = await self.redis.get(key)
        if data is None:
            return None
        return model.model_validate_json(data)

    async def _load_many(self, keys: List[str], model: Type[RecordT]) -> List[RecordT]:
        if not keys:
            return []
        values = await self.redis.mget(keys)
        return [model.model_validate_json(v) for v in values if v is not None]

    async def _index(self, key: str, record_id: str, when: datetime):
        await self.redis.zadd(key, {record_id: when.timestamp()})

    async def _modify(
        self,
        key: str,
        model: Type[RecordT],
        change: Callable[[Optional[RecordT]], Optional[RecordT]],
        on_write: Optional[Callable[[Any, Optional[RecordT], RecordT], None]] = None,
    ) -> Tuple[Optional[RecordT], Optional[RecordT]]:
        """Read-modify-write one record under WATCH, retried on conflict.

        ``change`` gets the stored record (or None) and returns the record to
        write, or None to leave it alone. It may run more than once.
        ``on_write`` queues extra commands into the same MULTI block.
        Returns (previous, written).
        """
        async def apply(pipe):
            data = await pipe.get(key)
            previous = model.model_validate_json(data) if data is not None else None
            updated = change(previous)
            pipe.multi()
            if updated is not None:
                pipe.set(key, updated.model_dump_json())
                if on_write is not None:
                    on_write(pipe, previous, updated)
            return previous, updated

        return await self.redis.transaction(apply, key, value_from_callable=True)

    # ==================== Calls ====================

    async def ensure_call(self, call_sid: str, **fields: Any) -> Call:
        key = f"calls:{call_sid}"
        fields = {name: value for name, value in fields.items() if value is not None}

        def merge(existing: Optional[Call]) -> Optional[Call]:
            if existing is None:
                return Call(call_sid=call_sid, **fields)
            missing = {
                name: value
                for name, value in fields.items()
                if getattr(existing, name, None) in (None, "")
            }
            if not missing:
                return None
            return existing.model_copy(update={**missing, "updated_at": utcnow()})

        def on_create(pipe, previous: Optional[Call], call: Call):
            if previous is None:
                pipe.zadd("calls:index", {call_sid: call.created_at.timestamp()})
                pipe.hincrby(STATS_CALLS, call.status.value, 1)

        previous, written = await self._modify(key, Call, merge, on_create)
        if previous is None:
            logger.info("[Store] Created call %s (%s)", call_sid, written.status.value)
        return written or previous

    async def get_call(self, call_sid: str) -> Optional[Call]:
        return await self._load(f"calls:{call_sid}", Call)

    async def update_call_status(
        self,
        call_sid: str,
        status: CallStatus,
        duration: Optional[int] = None,
        answered_by: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Call]:
        def apply_status(call: Optional[Call]) -> Optional[Call]:
            if call is None:
                return None
            update: dict = {}
            if status != call.status:
                if not can_transition(call.status, status):
                    return None
                update["status"] = status
            if duration is not None:
                update["duration"] = max(0, int(duration))
            if answered_by:
                update["answered_by"] = answered_by
            if ended_at is not None and call.ended_at is None:
                update["ended_at"] = ended_at
            if not update:
                return None
            update["updated_at"] = utcnow()
            return call.model_copy(update=update)

        previous, written = await self._modify(
            f"calls:{call_sid}", Call, apply_status, _count_status_change(STATS_CALLS)
        )
        if previous is None:
            return None
        if written is None:
            if status != previous.status and not can_transition(previous.status, status):
                logger.info(
                    "[Store] Ignoring status %s for call %s (already %s)",
                    status.value, call_sid, previous.status.value,
                )
            return previous

        logger.info("[Store] Call %s: status=%s", call_sid, written.status.value)
        return written

    async def list_calls(self, limit: int = 50) -> List[Call]:
        sids = await self.redis.zrevrange("calls:index", 0, limit - 1)
        return await self._load_many([f"calls:{sid}" for sid in sids], Call)

    # ==================== Transcripts ====================

    async def add_transcript(self, line: TranscriptLine) -> TranscriptLine:
        await self._save(f"transcripts:{line.id}", line)
        await self.redis.rpush(f"call:{line.call_sid}:transcripts", line.id)
        return line

    async def list_transcripts(self, call_sid: str) -> List[TranscriptLine]:
        ids = await self.redis.lrange(f"call:{call_sid}:transcripts", 0, -1)
        return await self._load_many([f"transcripts:{i}" for i in ids], TranscriptLine)

    # ==================== Keyword detections ====================

    async def add_detection(self, detection: KeywordDetection) -> KeywordDetection:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"detections:{detection.id}", detection.model_dump_json())
            pipe.rpush(f"call:{detection.call_sid}:detections", detection.id)
            pipe.zadd("detections:index", {detection.id: detection.created_at.timestamp()})
            pipe.incr(STATS_DETECTIONS)
            await pipe.execute()
        return detection

    async def get_detection(self, detection_id: str) -> Optional[KeywordDetection]:
        return await self._load(f"detections:{detection_id}", KeywordDetection)

    async def resolve_detection(
        self, detection_id: str, status: AlertStatus
    ) -> Optional[KeywordDetection]:
        def resolve(detection: Optional[KeywordDetection]) -> Optional[KeywordDetection]:
            if detection is None or status == AlertStatus.PENDING:
                return None
            if detection.alert_status != AlertStatus.PENDING:
                return None
            return detection.model_copy(update={
                "alert_status": status,
                "alert_sent": status == AlertStatus.SUCCESS,
            })

        previous, written = await self._modify(
            f"detections:{detection_id}", KeywordDetection, resolve
        )
        if previous is not None and written is None:
            logger.warning(
                "[Store] Detection %s already resolved as %s",
                detection_id, previous.alert_status.value,
            )
        return written or previous

    async def list_detections(self, call_sid: str) -> List[KeywordDetection]:
        ids = await self.redis.lrange(f"call:{call_sid}:detections", 0, -1)
        return await self._load_many([f"detections:{i}" for i in ids], KeywordDetection)

    async def list_recent_detections(self, limit: int = 20) -> List[KeywordDetection]:
        ids = await self.redis.zrevrange("detections:index", 0, limit - 1)
        return await self._load_many([f"detections:{i}" for i in ids], KeywordDetection)

    # ==================== SMS alerts ====================

    async def add_sms_alert(self, alert: SmsAlert) -> SmsAlert:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(f"sms_alerts:{alert.id}", alert.model_dump_json())
            pipe.rpush(f"call:{alert.call_sid}:sms_alerts", alert.id)
            pipe.hincrby(STATS_SMS, alert.status.value, 1)
            await pipe.execute()
        return alert

    async def get_sms_alert(self, alert_id: str) -> Optional[SmsAlert]:
        return await self._load(f"sms_alerts:{alert_id}", SmsAlert)

    async def get_sms_alert_by_message_sid(self, message_sid: str) -> Optional[SmsAlert]:
        alert_id = await self.redis.get(f"sms_alerts:sid:{message_sid}")
        if alert_id is None:
            return None
        return await self.get_sms_alert(alert_id)

    async def update_sms_alert(
        self,
        alert_id: str,
        status: SmsStatus,
        message_sid: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[SmsAlert]:
        def apply_status(alert: Optional[SmsAlert]) -> Optional[SmsAlert]:
            if alert is None:
                return None
            if status != alert.status and status not in SMS_TRANSITIONS[alert.status]:
                return None
            now = utcnow()
            update: dict = {"status": status}
            if message_sid:
                update["message_sid"] = message_sid
            if error_message:
                update["error_message"] = error_message
            if status == SmsStatus.SENT and alert.sent_at is None:
                update["sent_at"] = now
            if status == SmsStatus.DELIVERED:
                update["delivered_at"] = now
            return alert.model_copy(update=update)

        def index_sid(pipe, previous: Optional[SmsAlert], alert: SmsAlert):
            _count_status_change(STATS_SMS)(pipe, previous, alert)
            if message_sid:
                pipe.set(f"sms_alerts:sid:{message_sid}", alert_id)

        previous, written = await self._modify(
            f"sms_alerts:{alert_id}", SmsAlert, apply_status, index_sid
        )
        if previous is not None and written is None:
            logger.info(
                "[Store] Ignoring SMS status %s for alert %s (already %s)",
                status.value, alert_id, previous.status.value,
            )
        return written or previous

    async def list_sms_alerts(self, call_sid: str) -> List[SmsAlert]:
        ids = await self.redis.lrange(f"call:{call_sid}:sms_alerts", 0, -1)
        return await self._load_many([f"sms_alerts:{i}" for i in ids], SmsAlert)

    # ==================== System logs ====================

    async def add_log(self, entry: SystemLogEntry) -> SystemLogEntry:
        await self._save(f"logs:{entry.id}", entry)
        await self._index("logs:index", entry.id, entry.created_at)
        if entry.call_sid:
            await self.redis.rpush(f"call:{entry.call_sid}:logs", entry.id)
        return entry

    async def list_logs(
        self,
        level: Optional[str] = None,
        component: Optional[str] = None,
        call_sid: Optional[str] = None,
        limit: int = 100,
    ) -> List[SystemLogEntry]:
        if call_sid:
            ids = await self.redis.lrange(f"call:{call_sid}:logs", 0, -1)
            ids.reverse()
        else:
            ids = await self.redis.zrevrange("logs:index", 0, -1)

        entries = await self._load_many([f"logs:{i}" for i in ids], SystemLogEntry)
        if level:
            entries = [e for e in entries if e.level.value == level.upper()]
        if component:
            entries = [e for e in entries if e.component == component]
        return entries[:limit]

    # ==================== Stats ====================

    async def get_stats(self) -> Dict[str, Any]:
        calls = await self.redis.hgetall(STATS_CALLS)
        sms = await self.redis.hgetall(STATS_SMS)
        detections = await self.redis.get(STATS_DETECTIONS)
        return {
            "calls_by_status": {k: int(v) for k, v in calls.items() if int(v) > 0},
            "detections": int(detections or 0),
            "sms_by_status": {k: int(v) for k, v in sms.items() if int(v) > 0},
        }


def _count_status_change(counter_key: str):
    """on_write hook moving one unit between status counters."""
    def count(pipe, previous, record):
        if previous is not None and previous.status != record.status:
            pipe.hincrby(counter_key, previous.status.value, -1)
            pipe.hincrby(counter_key, record.status.value, 1)
    return count
