"""
System log sink: a bounded queue drained into the record store.

Producers call emit() from the hot path; it never awaits and never raises.
A single background task writes entries to the persistence gateway.
When the queue is full the entry is dropped and counted.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from callwatch.models import LogLevel, SystemLogEntry
from callwatch.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)


class SystemLogSink:
    def __init__(self, persistence: PersistenceGateway, maxsize: int = 1000):
        self.persistence = persistence
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.written = 0
        self.dropped = 0
        self.failed = 0

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._drain(), name="system-log-sink")
            logger.info("System log sink started")

    async def stop(self, timeout: float = 5.0):
        """Flush queued entries, then stop the drain task."""
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Log sink flush timed out with %d entries queued", self._queue.qsize())
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(
            "System log sink stopped (written=%d dropped=%d failed=%d)",
            self.written, self.dropped, self.failed,
        )

    def emit(
        self,
        level: LogLevel,
        component: str,
        message: str,
        call_sid: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        entry = SystemLogEntry(
            call_sid=call_sid,
            level=level,
            component=component,
            message=message,
            metadata=metadata or {},
        )
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Log sink full, dropped entry: %s", message)

    async def flush(self):
        """Wait until every queued entry has been handled."""
        await self._queue.join()

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "queued": self._queue.qsize(),
            "written": self.written,
            "dropped": self.dropped,
            "failed": self.failed,
        }

    async def _drain(self):
        while True:
            entry = await self._queue.get()
            try:
                await self.persistence.add_log(entry)
                self.written += 1
            except Exception as e:
                self.failed += 1
                logger.error("Failed to store system log entry: %s", e)
            finally:
                self._queue.task_done()
