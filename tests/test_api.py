"""HTTP tests for the index routes."""
import pytest
from httpx import AsyncClient, ASGITransport

from element_index.main import create_app

from helpers import FakeCollectionServer, collection_document, write_element

COLLECTION_WRITER = {
    "path": "library/personas/writer.md",
    "type": "persona",
    "name": "Writer",
    "version": "1.2.0",
}


@pytest.fixture
async def client(make_manager, local_root):
    write_element(local_root, "personas", "writer.md", {"name": "Writer", "version": "1.0.0"})
    write_element(local_root, "skills", "review.md", {"name": "Review", "tags": ["quality"]})
    server = FakeCollectionServer(collection_document({"personas": [COLLECTION_WRITER]}))
    app = create_app(make_manager(collection_server=server))

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert set(data["sources"]) == {"local", "remote-portfolio", "collection"}


@pytest.mark.asyncio
async def test_search(client):
    resp = await client.get("/index/search", params={"q": "writer"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_count"] == 2
    assert [r["entry"]["source"] for r in data["results"]] == ["local", "collection"]
    assert all(r["rank"] == 1 for r in data["results"])
    assert data["degraded"] is False


@pytest.mark.asyncio
async def test_search_filters_by_type_and_source(client):
    resp = await client.get("/index/search", params={"q": "", "type": "skill", "source": "local"})
    assert resp.status_code == 200
    assert [r["entry"]["name"] for r in resp.json()["results"]] == ["Review"]


@pytest.mark.asyncio
async def test_unknown_source_is_bad_request(client):
    resp = await client.get("/index/search", params={"q": "writer", "source": "nowhere"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_find_element(client):
    resp = await client.get("/index/elements/writer")
    assert resp.status_code == 200
    data = resp.json()
    assert data["ambiguous"] is False
    assert data["types"] == ["personas"]
    assert len(data["matches"]) == 2


@pytest.mark.asyncio
async def test_find_missing_element(client):
    resp = await client.get("/index/elements/nobody")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_type(client):
    resp = await client.get("/index/types/personas")
    assert resp.status_code == 200
    assert resp.json()["count"] == 2

    resp = await client.get("/index/types/widgets")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_duplicates(client):
    resp = await client.get("/index/duplicates/writer")
    assert resp.status_code == 200
    data = resp.json()
    assert [e["source"] for e in data["entries"]] == ["local", "collection"]
    assert data["canonical"]["version"] == "1.2.0"

    resp = await client.get("/index/duplicates/review")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_versions(client):
    resp = await client.get("/index/versions/writer", params={"type": "personas"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["recommendation"] == "upgrade"
    assert data["recommended_source"] == "collection"

    resp = await client.get("/index/versions/nobody")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_rebuild_and_statistics(client):
    resp = await client.post("/index/rebuild", params={"source": "collection"})
    assert resp.status_code == 200
    assert [(o["source"], o["count"]) for o in resp.json()] == [("collection", 1)]

    resp = await client.get("/index/statistics")
    assert resp.status_code == 200
    data = resp.json()
    assert data["per_source_counts"]["collection"] == 1
    assert data["last_rebuild"] is not None


@pytest.mark.asyncio
async def test_invalidate_after_submit(client):
    resp = await client.post("/index/invalidate", params={"action": "submit"})
    assert resp.status_code == 200
    assert resp.json()["invalidated"] == ["remote-portfolio", "collection"]
