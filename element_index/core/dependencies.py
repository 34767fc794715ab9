from pathlib import Path
from typing import Optional
import json
import logging
import os

import httpx
from fastapi import Request

from element_index.domain.models import IndexConfig
from element_index.services.audit import AuditLogger, AuditSink
from element_index.services.caching import CacheLayer
from element_index.services.index_manager import UnifiedIndexManager
from element_index.services.normalizer import UnicodeQueryNormalizer
from element_index.services.repository_client import GitHubRepositoryClient, RepositoryServiceClient
from element_index.services.sources.collection_fetcher import CollectionIndexFetcher
from element_index.services.sources.local_reader import LocalSourceReader
from element_index.services.sources.portfolio_reader import RemotePortfolioReader
from element_index.storage.element_store import ElementStoreReader

logger = logging.getLogger(__name__)

DATA_ROOT_ENV_VAR = "ELEMENT_INDEX_DATA_DIR"
TOKEN_ENV_VAR = "GITHUB_TOKEN"
CONFIG_FILE_NAME = "index.json"
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_DATA_DIR = _REPO_ROOT / "data"


def get_data_dir() -> Path:
    """
    Determine the data directory path.

    Priority:
    1. Environment variable ELEMENT_INDEX_DATA_DIR
    2. '<project root>/data'
    """
    env_path = os.environ.get(DATA_ROOT_ENV_VAR)
    if env_path:
        d = Path(env_path).expanduser()
    else:
        d = _DEFAULT_DATA_DIR
    d.mkdir(parents=True, exist_ok=True)
    return d


def load_index_config(data_dir: Optional[Path] = None) -> IndexConfig:
    """
    Load index.json, merging with defaults for any missing fields,
    and write it back so any new fields are persisted.
    """
    path = (data_dir or get_data_dir()) / CONFIG_FILE_NAME
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            config = IndexConfig(**raw)
        except (ValueError, TypeError) as e:
            # Unparseable or invalid file: fall back to defaults and overwrite it.
            logger.warning(f"Invalid index config at {path}, using defaults: {e}")
            config = IndexConfig()
    else:
        config = IndexConfig()

    path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
    return config


def build_index_manager(
    config: IndexConfig,
    data_dir: Optional[Path] = None,
    repository_client: Optional[RepositoryServiceClient] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    element_store: Optional[ElementStoreReader] = None,
    audit_sink: Optional[AuditSink] = None,
) -> UnifiedIndexManager:
    """
    Wire the readers, the cache and the manager together.

    The cache is created here and shared by reference; nothing is global.
    Clients created here are closed by ``UnifiedIndexManager.aclose``.
    """
    data_dir = data_dir or get_data_dir()
    cache = CacheLayer(max_entries=config.cache_max_entries)
    audit = AuditLogger(sink=audit_sink, max_queue_size=config.audit_queue_size)

    closeables = []
    if repository_client is None:
        repository_client = GitHubRepositoryClient(
            token=os.environ.get(TOKEN_ENV_VAR),
            base_url=config.repository_api_url,
        )
        closeables.append(repository_client)

    local_reader = LocalSourceReader(
        Path(config.local_root),
        store=element_store,
        file_extensions=config.file_extensions,
    )
    portfolio_reader = RemotePortfolioReader.from_config(config, repository_client, cache)
    collection_fetcher = CollectionIndexFetcher.from_config(
        config,
        cache,
        repository_client=repository_client,
        http_client=http_client,
        cache_dir=data_dir / "cache",
        audit=audit,
    )

    return UnifiedIndexManager(
        config,
        cache,
        local_reader,
        portfolio_reader,
        collection_fetcher,
        normalizer=UnicodeQueryNormalizer(),
        audit=audit,
        closeables=closeables,
    )


def get_index_manager(request: Request) -> UnifiedIndexManager:
    """FastAPI dependency returning the manager created at application startup."""
    return request.app.state.index_manager
