"""Pytest fixtures for the element index tests."""
from pathlib import Path
from typing import Any, Optional

import pytest

from element_index.domain.models import IndexConfig
from element_index.services.audit import AuditLogger
from element_index.services.caching import CacheLayer
from element_index.services.index_manager import UnifiedIndexManager
from element_index.services.repository_client import RepositoryServiceClient
from element_index.services.sources.collection_fetcher import CollectionIndexFetcher
from element_index.services.sources.local_reader import LocalSourceReader
from element_index.services.sources.portfolio_reader import RemotePortfolioReader

from helpers import COLLECTION_URL, FakeCollectionServer, FakeRepositoryClient, RecordingAuditSink


@pytest.fixture
def local_root(tmp_path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def make_manager(tmp_path, local_root, audit_sink):
    """
    Build a manager over a tmp local root, an optional fake portfolio and a
    fake collection endpoint.
    """

    def factory(
        portfolio_client: Optional[RepositoryServiceClient] = None,
        collection_server: Optional[FakeCollectionServer] = None,
        collection_scan_client: Optional[RepositoryServiceClient] = None,
        **config_overrides: Any,
    ) -> UnifiedIndexManager:
        settings = {
            "local_root": str(local_root),
            "portfolio_owner": "alice" if portfolio_client is not None else None,
            "collection_index_url": COLLECTION_URL,
            "batch_delay_seconds": 0,
            "max_retries": 0,
        }
        settings.update(config_overrides)
        config = IndexConfig(**settings)

        cache = CacheLayer(max_entries=config.cache_max_entries)
        audit = AuditLogger(sink=audit_sink, max_queue_size=config.audit_queue_size)
        local_reader = LocalSourceReader(local_root, file_extensions=config.file_extensions)
        portfolio_reader = RemotePortfolioReader.from_config(config, portfolio_client or FakeRepositoryClient(), cache)
        server = collection_server or FakeCollectionServer()
        fetcher = CollectionIndexFetcher.from_config(
            config,
            cache,
            repository_client=collection_scan_client,
            http_client=server.client(),
            cache_dir=tmp_path / "data" / "cache",
            audit=audit,
        )
        fetcher.retry_delay_seconds = 0
        return UnifiedIndexManager(config, cache, local_reader, portfolio_reader, fetcher, audit=audit)

    return factory
