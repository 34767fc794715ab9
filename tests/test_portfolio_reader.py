"""Remote portfolio reader tests against an in-memory repository client."""
import asyncio

import pytest

from element_index.domain.errors import NetworkError, RateLimited, SourceUnavailable
from element_index.domain.models import ElementSource
from element_index.services.caching import CacheLayer
from element_index.services.sources.portfolio_reader import RemotePortfolioReader

from helpers import FakeRepositoryClient, element_text, expire_record


def portfolio_files(count: int = 3):
    return {
        f"skills/skill-{i}.md": element_text({"name": f"Skill {i}", "version": f"1.{i}.0"})
        for i in range(count)
    }


def make_reader(client, cache=None, **kwargs) -> RemotePortfolioReader:
    settings = {"batch_delay_seconds": 0, "max_backoff_seconds": 0.01}
    settings.update(kwargs)
    return RemotePortfolioReader(client, cache if cache is not None else CacheLayer(), owner="alice", **settings)


@pytest.mark.asyncio
async def test_lists_every_file_in_batches():
    client = FakeRepositoryClient(portfolio_files(7))
    reader = make_reader(client, batch_size=5)

    entries = await reader.list_remote()

    assert sorted(e.name for e in entries) == [f"Skill {i}" for i in range(7)]
    assert all(e.source == ElementSource.REMOTE_PORTFOLIO for e in entries)
    assert all(e.content_fingerprint for e in entries)
    assert client.metadata_calls == 7


@pytest.mark.asyncio
async def test_second_read_is_served_from_cache():
    client = FakeRepositoryClient(portfolio_files())
    reader = make_reader(client)

    first = await reader.load_view()
    second = await reader.load_view()

    assert first.status == "ok"
    assert second.status == "cached"
    assert client.metadata_calls == 3


@pytest.mark.asyncio
async def test_categories_in_subdirectories_are_included():
    client = FakeRepositoryClient({"personas/creative/storyteller.md": element_text({"name": "Storyteller"})})
    entries = await make_reader(client).list_remote()
    assert [e.name for e in entries] == ["Storyteller"]


@pytest.mark.asyncio
async def test_empty_portfolio_has_no_elements():
    entries = await make_reader(FakeRepositoryClient({})).list_remote()
    assert entries == []


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    client = FakeRepositoryClient(portfolio_files(1), errors=[RateLimited(retry_after=0)])
    entries = await make_reader(client, max_retries=2).list_remote()
    assert [e.name for e in entries] == ["Skill 0"]


@pytest.mark.asyncio
async def test_exhausted_rate_limit_without_snapshot_is_unavailable():
    client = FakeRepositoryClient(portfolio_files(1), errors=[RateLimited(retry_after=0)] * 5)
    with pytest.raises(SourceUnavailable):
        await make_reader(client, max_retries=1).list_remote()


@pytest.mark.asyncio
async def test_failed_refetch_serves_expired_snapshot_as_stale():
    cache = CacheLayer()
    client = FakeRepositoryClient(portfolio_files(2))
    reader = make_reader(client, cache=cache)
    await reader.list_remote()

    expire_record(cache, reader.cache_key)
    client.errors = [NetworkError("down")] * 20
    view = await reader.load_view()

    assert view.status == "stale"
    assert sorted(e.name for e in view.entries) == ["Skill 0", "Skill 1"]
    assert "down" in view.error


@pytest.mark.asyncio
async def test_invalidated_snapshot_is_never_served():
    cache = CacheLayer()
    client = FakeRepositoryClient(portfolio_files(2))
    reader = make_reader(client, cache=cache)
    await reader.list_remote()

    reader.invalidate()
    client.errors = [NetworkError("down")] * 20
    with pytest.raises(SourceUnavailable):
        await reader.load_view()


@pytest.mark.asyncio
async def test_invalidate_forces_refetch():
    client = FakeRepositoryClient(portfolio_files(1))
    reader = make_reader(client)
    await reader.list_remote()

    client.files["skills/new-skill.md"] = element_text({"name": "New Skill"})
    reader.invalidate()
    entries = await reader.list_remote()

    assert sorted(e.name for e in entries) == ["New Skill", "Skill 0"]


@pytest.mark.asyncio
async def test_invalid_metadata_shape_is_skipped():
    files = portfolio_files(1)
    files["templates/bad.md"] = element_text({"name": "Bad", "variables": 5})
    entries = await make_reader(FakeRepositoryClient(files)).list_remote()
    assert [e.name for e in entries] == ["Skill 0"]


@pytest.mark.asyncio
async def test_no_owner_means_disabled():
    client = FakeRepositoryClient(portfolio_files())
    reader = RemotePortfolioReader(client, CacheLayer(), owner=None)
    view = await reader.load_view()
    assert view.status == "disabled"
    assert view.entries == []
    assert client.list_calls == 0


@pytest.mark.asyncio
async def test_rate_limit_wait_past_deadline_serves_snapshot():
    cache = CacheLayer()
    client = FakeRepositoryClient(portfolio_files(2))
    reader = make_reader(client, cache=cache, max_retries=3, max_backoff_seconds=30)
    await reader.list_remote()

    expire_record(cache, reader.cache_key)
    client.errors = [RateLimited(retry_after=5.0)] * 10
    deadline = asyncio.get_running_loop().time() + 0.5
    view = await asyncio.wait_for(reader.load_view(deadline=deadline), timeout=1.0)

    assert view.status == "stale"
    assert sorted(e.name for e in view.entries) == ["Skill 0", "Skill 1"]
