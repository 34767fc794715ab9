import pytest

from element_index.services.audit import AuditLogger

from helpers import RecordingAuditSink


class FlakySink(RecordingAuditSink):
    async def log_event(self, event):
        if event.type == "boom":
            raise RuntimeError("sink down")
        await super().log_event(event)


@pytest.mark.asyncio
async def test_events_are_delivered_after_flush():
    sink = RecordingAuditSink()
    audit = AuditLogger(sink=sink)
    audit.start()

    audit.log_event("index_rebuild", "index", details="local=ok:3")
    audit.log_event("cache_invalidated", "index", severity="MEDIUM")
    await audit.flush()
    await audit.aclose()

    assert sink.types == ["index_rebuild", "cache_invalidated"]
    assert sink.events[1].severity == "MEDIUM"


@pytest.mark.asyncio
async def test_full_queue_drops_new_events():
    sink = RecordingAuditSink()
    audit = AuditLogger(sink=sink, max_queue_size=2)

    for i in range(3):
        audit.log_event(f"event_{i}", "index")

    assert audit.dropped == 1
    assert audit.pending == 2
    await audit.flush()
    await audit.aclose()
    assert sink.types == ["event_0", "event_1"]


@pytest.mark.asyncio
async def test_sink_failure_does_not_stop_delivery():
    sink = FlakySink()
    audit = AuditLogger(sink=sink)

    audit.log_event("boom", "index")
    audit.log_event("after", "index")
    await audit.flush()
    await audit.aclose()

    assert sink.types == ["after"]
    assert audit.pending == 0
