"""
Read the user's remote portfolio repository through the repository client.

The listing is cached under ``portfolio:<owner>/<repo>``; a failed refetch
falls back to the expired-but-not-invalidated snapshot when one exists.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from element_index.domain.errors import ElementIndexError, SourceUnavailable
from element_index.domain.models import ElementSource, IndexConfig, IndexEntry, SourceView, utc_now
from element_index.services.caching import CacheLayer
from element_index.services.repository_client import RepositoryServiceClient
from element_index.services.sources.repository_scan import RepositoryTreeScanner

logger = logging.getLogger(__name__)


class RemotePortfolioReader:
    source = ElementSource.REMOTE_PORTFOLIO

    def __init__(
        self,
        client: RepositoryServiceClient,
        cache: CacheLayer,
        owner: Optional[str],
        repo: str = "dollhouse-portfolio",
        ttl_seconds: float = 900,
        batch_size: int = 5,
        batch_delay_seconds: float = 0.1,
        max_retries: int = 3,
        max_backoff_seconds: float = 30.0,
        file_extensions: Iterable[str] = (".md", ".yaml", ".yml"),
    ):
        self.cache = cache
        self.owner = owner
        self.repo = repo
        self.ttl_seconds = ttl_seconds
        self.scanner = RepositoryTreeScanner(
            client,
            self.source,
            owner or "",
            repo,
            batch_size=batch_size,
            batch_delay_seconds=batch_delay_seconds,
            max_retries=max_retries,
            max_backoff_seconds=max_backoff_seconds,
            file_extensions=file_extensions,
        )

    @classmethod
    def from_config(cls, config: IndexConfig, client: RepositoryServiceClient, cache: CacheLayer) -> "RemotePortfolioReader":
        return cls(
            client,
            cache,
            owner=config.portfolio_owner,
            repo=config.portfolio_repo,
            ttl_seconds=config.portfolio_ttl_seconds,
            batch_size=config.batch_size,
            batch_delay_seconds=config.batch_delay_seconds,
            max_retries=config.max_retries,
            max_backoff_seconds=config.max_backoff_seconds,
            file_extensions=config.file_extensions,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.owner)

    @property
    def cache_key(self) -> str:
        return f"portfolio:{self.owner}/{self.repo}"

    def invalidate(self) -> None:
        """Drop the cached listing. Call after any write to the portfolio."""
        if self.enabled:
            self.cache.invalidate(self.cache_key)

    async def list_remote(self, force_refresh: bool = False) -> List[IndexEntry]:
        view = await self.load_view(force_refresh=force_refresh)
        return view.entries

    def stale_view(self, error: str) -> Optional[SourceView]:
        """The expired snapshot as a stale view, or None when there is none."""
        stale = self.cache.get_stale(self.cache_key)
        if stale is None:
            return None
        logger.warning(f"Portfolio fetch failed, serving snapshot from {stale.fetched_at.isoformat()}: {error}")
        return SourceView(source=self.source, entries=list(stale.entries), status="stale", error=error)

    async def load_view(self, force_refresh: bool = False, deadline: Optional[float] = None) -> SourceView:
        """
        Return the portfolio entries and whether they are fresh, cached or stale.

        ``deadline`` is an event loop time; rate-limit waits that would pass it
        fail the fetch early so the snapshot can still be served.
        Raises SourceUnavailable when the fetch fails and no snapshot exists.
        """
        if not self.enabled:
            return SourceView(source=self.source, status="disabled")

        if force_refresh:
            self.cache.invalidate(self.cache_key)

        started = utc_now()
        try:
            record = await self.cache.get_or_fetch(self.cache_key, lambda: self._fetch(deadline), self.ttl_seconds)
        except ElementIndexError as e:
            stale = self.stale_view(str(e))
            if stale is not None:
                return stale
            raise SourceUnavailable(self.source.value, str(e)) from e

        status = "cached" if record.fetched_at < started else "ok"
        return SourceView(source=self.source, entries=list(record.entries), status=status)

    async def _fetch(self, deadline: Optional[float] = None) -> List[IndexEntry]:
        logger.info(f"Fetching portfolio listing for {self.owner}/{self.repo}")
        entries = await self.scanner.scan(deadline)
        logger.info(f"Portfolio {self.owner}/{self.repo}: {len(entries)} element(s)")
        return entries
