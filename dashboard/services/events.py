from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from dashboard.schemas import ProgressEvent

LOGGER = logging.getLogger("dashboard.events")

TEST_PROGRESS = "test-progress"
TEST_WARNING = "test-warning"
TEST_COMPLETE = "test-complete"
REPORT_ENHANCED = "report-enhanced"
REPORT_ENHANCEMENT_FAILED = "report-enhancement-failed"
BACKUP_CREATED = "backup-created"


def utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class EventBroker:
    """In-process progress channel.

    Events are kept in a bounded history with monotonically increasing
    sequence numbers so clients can long-poll with ``since``.
    """

    def __init__(self, history: int = 500, poll_interval: float = 0.25) -> None:
        self._events: Deque[ProgressEvent] = deque(maxlen=history)
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._poll_interval = poll_interval
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._events[-1].sequence if self._events else 0

    def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> ProgressEvent:
        with self._lock:
            record = ProgressEvent(
                sequence=next(self._counter),
                event=event,
                payload=dict(payload or {}),
                timestamp=utcnow(),
            )
            self._events.append(record)
        LOGGER.debug("Event %s #%s: %s", event, record.sequence, record.payload)
        return record

    def history(self, since: int = 0, event: Optional[str] = None) -> List[ProgressEvent]:
        with self._lock:
            snapshot = list(self._events)
        return [
            item
            for item in snapshot
            if item.sequence > since and (event is None or item.event == event)
        ]

    async def wait(self, since: int = 0, timeout: float = 25.0) -> List[ProgressEvent]:
        """Return events newer than ``since``, waiting up to ``timeout`` seconds for one."""
        start = time.monotonic()
        while True:
            pending = self.history(since)
            if pending or self._closed or time.monotonic() - start >= timeout:
                return pending
            await asyncio.sleep(self._poll_interval)

    def close(self) -> None:
        self._closed = True
