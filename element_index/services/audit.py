"""
Buffered audit logging.

Callers enqueue events without awaiting; a background task drains the queue
into an AuditSink. A full queue drops new events instead of blocking.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from element_index.domain.models import AuditEvent, AuditSeverity

logger = logging.getLogger(__name__)

_LEVELS = {
    "LOW": logging.INFO,
    "MEDIUM": logging.INFO,
    "HIGH": logging.WARNING,
    "CRITICAL": logging.ERROR,
}


class AuditSink(ABC):
    @abstractmethod
    async def log_event(self, event: AuditEvent) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes audit events to a dedicated logger."""

    def __init__(self, logger_name: str = "element_index.audit"):
        self._logger = logging.getLogger(logger_name)

    async def log_event(self, event: AuditEvent) -> None:
        self._logger.log(
            _LEVELS.get(event.severity, logging.INFO),
            f"[{event.type}] source={event.source} {event.details}",
        )


class AuditLogger:
    """
    Bounded asynchronous queue in front of an AuditSink.

    ``log_event`` is safe to call before ``start``; queued events are
    delivered once the worker runs.
    """

    def __init__(self, sink: Optional[AuditSink] = None, max_queue_size: int = 1000):
        self.sink = sink or LoggingAuditSink()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    def log_event(
        self,
        event_type: str,
        source: str,
        details: str = "",
        severity: AuditSeverity = "LOW",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            type=event_type,
            severity=severity,
            source=source,
            details=details,
            metadata=metadata or {},
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Audit queue full, dropping {event_type} event ({self.dropped} dropped so far)")

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.sink.log_event(event)
            except Exception as e:
                logger.error(f"Audit sink failed for {event.type}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued event has been handed to the sink."""
        if self._worker is None or self._worker.done():
            self.start()
        await self._queue.join()

    async def aclose(self) -> None:
        if self._worker is None:
            return
        if not self._worker.done():
            await self.flush()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()
