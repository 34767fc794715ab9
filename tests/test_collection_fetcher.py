"""Collection index fetcher tests: document path, fallback scan, saved copy."""
import json

import pytest

from element_index.domain.errors import SchemaInvalid, SourceUnavailable
from element_index.domain.models import ElementSource, ElementType
from element_index.services.audit import AuditLogger
from element_index.services.caching import CacheLayer
from element_index.services.sources.collection_fetcher import CollectionIndexFetcher

from helpers import (
    COLLECTION_URL,
    FailingRepositoryClient,
    FakeCollectionServer,
    FakeRepositoryClient,
    RecordingAuditSink,
    collection_document,
    element_text,
)

WRITER_SUMMARY = {
    "path": "library/personas/writer.md",
    "type": "persona",
    "name": "Writer",
    "description": "Writes long-form fiction",
    "version": "1.2.0",
    "author": "dollhouse",
    "tags": ["writing", "fiction"],
    "sha": "0a1b2c",
    "created": "2025-07-01",
}
REVIEW_SUMMARY = {
    "path": "library/skills/code-review.md",
    "type": "skill",
    "name": "Code Review",
    "description": "Reviews code",
    "version": 2,
    "author": "dollhouse",
    "tags": [],
    "sha": "3d4e5f",
}


def make_fetcher(server, tmp_path, cache=None, scan_client=None, audit=None) -> CollectionIndexFetcher:
    return CollectionIndexFetcher(
        cache if cache is not None else CacheLayer(),
        COLLECTION_URL,
        repository_client=scan_client,
        http_client=server.client(),
        cache_dir=tmp_path / "cache",
        audit=audit,
        max_retries=1,
        retry_delay_seconds=0,
        batch_delay_seconds=0,
    )


@pytest.mark.asyncio
async def test_document_is_flattened_into_entries(tmp_path):
    server = FakeCollectionServer(collection_document({"personas": [WRITER_SUMMARY], "skills": [REVIEW_SUMMARY]}))
    fetcher = make_fetcher(server, tmp_path)

    entries = await fetcher.list_collection()
    by_name = {e.name: e for e in entries}

    assert set(by_name) == {"Writer", "Code Review"}
    writer = by_name["Writer"]
    assert writer.source == ElementSource.COLLECTION
    assert writer.element_type == ElementType.PERSONAS
    assert writer.version == "1.2.0"
    assert writer.metadata.tags == ["writing", "fiction"]
    assert writer.locator == "DollhouseMCP/collection/library/personas/writer.md"
    assert by_name["Code Review"].version == "2"
    assert fetcher.last_path == "document"


@pytest.mark.asyncio
async def test_document_is_cached_for_its_ttl(tmp_path):
    server = FakeCollectionServer(collection_document({"personas": [WRITER_SUMMARY]}))
    fetcher = make_fetcher(server, tmp_path)

    await fetcher.list_collection()
    view = await fetcher.load_view()

    assert view.status == "cached"
    assert len(server.requests) == 1


@pytest.mark.asyncio
async def test_refresh_sends_conditional_request_and_reuses_on_304(tmp_path):
    server = FakeCollectionServer(collection_document({"personas": [WRITER_SUMMARY]}), etag='"v1"')
    fetcher = make_fetcher(server, tmp_path)

    await fetcher.list_collection()
    entries = await fetcher.list_collection(force_refresh=True)

    assert len(server.requests) == 2
    assert server.requests[1].headers["if-none-match"] == '"v1"'
    assert [e.name for e in entries] == ["Writer"]


def test_document_missing_total_elements_is_schema_invalid():
    document = collection_document({"personas": [WRITER_SUMMARY]})
    del document["total_elements"]
    with pytest.raises(SchemaInvalid):
        CollectionIndexFetcher.validate_document(document)


@pytest.mark.asyncio
async def test_invalid_document_falls_back_to_scan(tmp_path):
    document = collection_document({"personas": [WRITER_SUMMARY]})
    del document["total_elements"]
    server = FakeCollectionServer(document)
    scan_client = FakeRepositoryClient(
        {"library/skills/code-review.md": element_text({"name": "Code Review", "version": "2.0.0"})}
    )
    sink = RecordingAuditSink()
    audit = AuditLogger(sink=sink)
    fetcher = make_fetcher(server, tmp_path, scan_client=scan_client, audit=audit)

    entries = await fetcher.list_collection()
    await audit.flush()
    await audit.aclose()

    assert [e.name for e in entries] == ["Code Review"]
    assert entries[0].content_fingerprint
    assert fetcher.last_path == "fallback-scan"
    assert sink.types == ["collection_fallback"]


@pytest.mark.asyncio
async def test_unreachable_document_falls_back_to_scan(tmp_path):
    server = FakeCollectionServer(status_code=503)
    scan_client = FakeRepositoryClient({"library/agents/planner.md": element_text({"name": "Planner"})})
    fetcher = make_fetcher(server, tmp_path, scan_client=scan_client)

    entries = await fetcher.list_collection()

    assert [e.name for e in entries] == ["Planner"]
    # One try plus one retry on the 5xx.
    assert len(server.requests) == 2


@pytest.mark.asyncio
async def test_transient_server_error_is_retried(tmp_path):
    server = FakeCollectionServer(collection_document({"personas": [WRITER_SUMMARY]}))
    server.status_codes = [502]
    fetcher = make_fetcher(server, tmp_path)

    entries = await fetcher.list_collection()

    assert [e.name for e in entries] == ["Writer"]
    assert fetcher.last_path == "document"


@pytest.mark.asyncio
async def test_saved_document_is_last_resort(tmp_path):
    good = FakeCollectionServer(collection_document({"personas": [WRITER_SUMMARY]}))
    await make_fetcher(good, tmp_path).list_collection()
    saved = json.loads((tmp_path / "cache" / "collection-index.json").read_text(encoding="utf-8"))
    assert saved["total_elements"] == 1

    down = FakeCollectionServer(status_code=500)
    fetcher = make_fetcher(down, tmp_path, scan_client=FailingRepositoryClient())
    view = await fetcher.load_view()

    assert view.status == "stale"
    assert [e.name for e in view.entries] == ["Writer"]
    assert fetcher.last_path == "persisted"


@pytest.mark.asyncio
async def test_everything_failing_is_unavailable(tmp_path):
    fetcher = make_fetcher(FakeCollectionServer(status_code=500), tmp_path, scan_client=FailingRepositoryClient())
    with pytest.raises(SourceUnavailable):
        await fetcher.list_collection()


@pytest.mark.asyncio
async def test_bad_summaries_are_skipped(tmp_path):
    unknown_type = dict(REVIEW_SUMMARY, type="widget", name="Widget")
    no_name = {"path": "library/skills/x.md", "type": "skill"}
    server = FakeCollectionServer(
        collection_document({"personas": [WRITER_SUMMARY], "skills": [unknown_type, no_name]})
    )
    entries = await make_fetcher(server, tmp_path).list_collection()
    assert [e.name for e in entries] == ["Writer"]
