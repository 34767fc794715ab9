"""
Fetch the shared collection as one pre-built index document.

Primary path: download the versioned collection index from its static
endpoint (conditional on the previous ETag / Last-Modified), validate it and
flatten it into IndexEntries. When the document is unreachable or invalid,
fall back to scanning the collection repository tree. The last valid document
is persisted under the data directory and used when both paths fail.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles
import httpx
from pydantic import ValidationError

from element_index.domain.errors import (
    ElementIndexError,
    NetworkError,
    SchemaInvalid,
    SourceUnavailable,
)
from element_index.domain.models import (
    CollectionElementSummary,
    CollectionIndexDocument,
    ElementSource,
    ElementType,
    IndexConfig,
    IndexEntry,
    SourceView,
    utc_now,
)
from element_index.services.audit import AuditLogger
from element_index.services.caching import CacheLayer
from element_index.services.repository_client import RepositoryServiceClient
from element_index.services.sources.entries import build_entry, dedupe_by_id, parse_timestamp
from element_index.services.sources.repository_scan import RepositoryTreeScanner

logger = logging.getLogger(__name__)

PERSISTED_DOCUMENT_NAME = "collection-index.json"

# Summary keys that describe the file rather than the element.
_LOCATION_KEYS = ("path", "sha", "type")


class CollectionIndexFetcher:
    source = ElementSource.COLLECTION

    def __init__(
        self,
        cache: CacheLayer,
        index_url: str,
        owner: str = "DollhouseMCP",
        repo: str = "collection",
        root: str = "library",
        ttl_seconds: float = 3600,
        repository_client: Optional[RepositoryServiceClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_dir: Optional[Path] = None,
        audit: Optional[AuditLogger] = None,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        batch_size: int = 5,
        batch_delay_seconds: float = 0.1,
        max_backoff_seconds: float = 30.0,
        file_extensions: Iterable[str] = (".md", ".yaml", ".yml"),
    ):
        self.cache = cache
        self.index_url = index_url
        self.owner = owner
        self.repo = repo
        self.ttl_seconds = ttl_seconds
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.audit = audit
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(follow_redirects=True, timeout=30.0)

        self.scanner: Optional[RepositoryTreeScanner] = None
        if repository_client is not None:
            self.scanner = RepositoryTreeScanner(
                repository_client,
                self.source,
                owner,
                repo,
                root=root,
                batch_size=batch_size,
                batch_delay_seconds=batch_delay_seconds,
                max_retries=max_retries,
                max_backoff_seconds=max_backoff_seconds,
                file_extensions=file_extensions,
            )

        self._document: Optional[CollectionIndexDocument] = None
        self._etag: Optional[str] = None
        self._last_modified: Optional[str] = None
        # "document", "fallback-scan" or "persisted"
        self.last_path: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: IndexConfig,
        cache: CacheLayer,
        repository_client: Optional[RepositoryServiceClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_dir: Optional[Path] = None,
        audit: Optional[AuditLogger] = None,
    ) -> "CollectionIndexFetcher":
        return cls(
            cache,
            config.collection_index_url,
            owner=config.collection_owner,
            repo=config.collection_repo,
            root=config.collection_root,
            ttl_seconds=config.collection_ttl_seconds,
            repository_client=repository_client,
            http_client=http_client,
            cache_dir=cache_dir,
            audit=audit,
            max_retries=config.max_retries,
            batch_size=config.batch_size,
            batch_delay_seconds=config.batch_delay_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
            file_extensions=config.file_extensions,
        )

    @property
    def cache_key(self) -> str:
        return f"collection:{self.owner}/{self.repo}"

    @property
    def persisted_path(self) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / PERSISTED_DOCUMENT_NAME

    def invalidate(self) -> None:
        self.cache.invalidate(self.cache_key)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def list_collection(self, force_refresh: bool = False) -> List[IndexEntry]:
        view = await self.load_view(force_refresh=force_refresh)
        return view.entries

    async def stale_view(self, error: str) -> Optional[SourceView]:
        """
        The expired cache snapshot, else the last saved document, as a stale
        view. None when neither exists.
        """
        stale = self.cache.get_stale(self.cache_key)
        if stale is not None:
            logger.warning(f"Collection fetch failed, serving snapshot from {stale.fetched_at.isoformat()}: {error}")
            return SourceView(source=self.source, entries=list(stale.entries), status="stale", error=error)

        persisted = await self._load_persisted_document()
        if persisted is not None:
            logger.warning(f"Collection fetch failed, serving last saved index document: {error}")
            self.last_path = "persisted"
            return SourceView(source=self.source, entries=self.flatten(persisted), status="stale", error=error)
        return None

    async def load_view(self, force_refresh: bool = False, deadline: Optional[float] = None) -> SourceView:
        """
        Return the collection entries and whether they are fresh, cached or stale.

        ``deadline`` is an event loop time bounding retry waits.
        Raises SourceUnavailable when no path produced a view.
        """
        if force_refresh:
            self.cache.invalidate(self.cache_key)

        started = utc_now()
        try:
            record = await self.cache.get_or_fetch(self.cache_key, lambda: self._fetch(deadline), self.ttl_seconds)
        except ElementIndexError as e:
            stale = await self.stale_view(str(e))
            if stale is not None:
                return stale
            raise SourceUnavailable(self.source.value, str(e)) from e

        status = "cached" if record.fetched_at < started else "ok"
        return SourceView(source=self.source, entries=list(record.entries), status=status)

    # ========================================================================
    # Fetch paths
    # ========================================================================

    async def _fetch(self, deadline: Optional[float] = None) -> List[IndexEntry]:
        try:
            document = await self.download_document(deadline)
        except (NetworkError, SchemaInvalid) as e:
            return await self._fallback_scan(e, deadline)

        self.last_path = "document"
        entries = self.flatten(document)
        logger.info(f"Collection index {document.version}: {len(entries)} element(s)")
        return entries

    async def _fallback_scan(self, reason: Exception, deadline: Optional[float] = None) -> List[IndexEntry]:
        logger.warning(f"Collection index unavailable ({reason}); falling back to repository scan")
        if self.audit is not None:
            self.audit.log_event(
                "collection_fallback",
                self.source.value,
                details=str(reason),
                severity="MEDIUM",
                metadata={"url": self.index_url},
            )
        if self.scanner is None:
            raise reason

        entries = await self.scanner.scan(deadline)
        self.last_path = "fallback-scan"
        logger.info(f"Collection scan of {self.owner}/{self.repo}: {len(entries)} element(s)")
        return entries

    async def download_document(self, deadline: Optional[float] = None) -> CollectionIndexDocument:
        """
        GET and validate the collection index document.

        Transport errors and 5xx responses are retried with a linear backoff,
        unless the wait would pass ``deadline`` (event loop time).
        Raises NetworkError or SchemaInvalid.
        """
        headers: Dict[str, str] = {"Accept": "application/json"}
        if self._document is not None:
            if self._etag:
                headers["If-None-Match"] = self._etag
            if self._last_modified:
                headers["If-Modified-Since"] = self._last_modified

        response: Optional[httpx.Response] = None
        for attempt in range(1, self.max_retries + 2):
            try:
                response = await self._http.get(self.index_url, headers=headers)
                if response.status_code >= 500:
                    raise NetworkError(f"{self.index_url} returned {response.status_code}")
                break
            except (httpx.TransportError, NetworkError) as e:
                delay = self.retry_delay_seconds * attempt
                if attempt > self.max_retries or (
                    deadline is not None and asyncio.get_running_loop().time() + delay >= deadline
                ):
                    raise NetworkError(f"Collection index download failed: {e}") from e
                logger.warning(f"Collection index download failed (attempt {attempt}): {e}. Retrying...")
                await asyncio.sleep(delay)

        if response.status_code == 304 and self._document is not None:
            logger.debug("Collection index not modified")
            return self._document
        if response.status_code >= 400:
            raise NetworkError(f"{self.index_url} returned {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise SchemaInvalid(f"Collection index is not JSON: {e}") from e

        document = self.validate_document(payload)
        self._document = document
        self._etag = response.headers.get("etag")
        self._last_modified = response.headers.get("last-modified")
        await self._persist_document(payload)
        return document

    @staticmethod
    def validate_document(payload: Any) -> CollectionIndexDocument:
        try:
            return CollectionIndexDocument.model_validate(payload)
        except ValidationError as e:
            missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise SchemaInvalid(f"Collection index failed validation at {', '.join(missing)}") from e

    def flatten(self, document: CollectionIndexDocument) -> List[IndexEntry]:
        """Turn every usable element summary of the document into an entry."""
        cycle = utc_now()
        entries: List[IndexEntry] = []
        for category, items in document.index.items():
            for raw in items:
                try:
                    summary = CollectionElementSummary.model_validate(raw)
                    element_type = ElementType.parse(summary.type or category)
                except (ValidationError, ValueError) as e:
                    logger.warning(f"Skipping collection summary in {category}: {e}")
                    continue

                metadata = {k: v for k, v in raw.items() if k not in _LOCATION_KEYS}
                try:
                    entries.append(
                        build_entry(
                            self.source,
                            element_type,
                            f"{self.owner}/{self.repo}/{summary.path}",
                            metadata,
                            last_seen=cycle,
                            last_modified=parse_timestamp(raw.get("updated")),
                        )
                    )
                except ValidationError as e:
                    logger.warning(f"Skipping collection element {summary.path}: {e.error_count()} invalid field(s)")
        return dedupe_by_id(entries)

    # ========================================================================
    # Persisted copy
    # ========================================================================

    async def _persist_document(self, payload: Any) -> None:
        path = self.persisted_path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(payload))
            tmp_path.replace(path)
        except OSError as e:
            logger.warning(f"Could not save collection index to {path}: {e}")

    async def _load_persisted_document(self) -> Optional[CollectionIndexDocument]:
        path = self.persisted_path
        if path is None or not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                payload = json.loads(await f.read())
            return self.validate_document(payload)
        except (OSError, ValueError, SchemaInvalid) as e:
            logger.warning(f"Saved collection index at {path} is unusable: {e}")
            return None
