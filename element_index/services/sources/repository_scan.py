"""
Batched scan of a remote repository tree into IndexEntries.

Layout: [<root>/]<element type>/[<category>/]<file>. Used for the personal
portfolio and as the slow fallback path for the collection.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from element_index.domain.errors import NotFound, RateLimited
from element_index.domain.models import ElementSource, ElementType, IndexEntry, TreeItem, utc_now
from element_index.services.repository_client import RepositoryServiceClient
from element_index.services.sources.entries import build_entry, dedupe_by_id, parse_timestamp

logger = logging.getLogger(__name__)

MAX_SUBDIRECTORY_DEPTH = 1


async def call_with_rate_limit_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_retries: int = 3,
    max_backoff_seconds: float = 30.0,
    deadline: Optional[float] = None,
) -> Any:
    """
    Call ``func(*args)``, sleeping and retrying when it raises RateLimited.

    The wait is the server's retry-after hint (or a linear backoff when none
    is given) capped at ``max_backoff_seconds``. With a ``deadline`` (event
    loop time), a wait that would end past it re-raises instead of sleeping.
    """
    attempt = 0
    while True:
        try:
            return await func(*args)
        except RateLimited as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            hint = e.retry_after if e.retry_after is not None else 1.0 * attempt
            wait = min(hint, max_backoff_seconds)
            if deadline is not None and asyncio.get_running_loop().time() + wait >= deadline:
                logger.warning(f"Rate limited, retry in {wait:.1f}s would pass the deadline; giving up")
                raise
            logger.warning(f"Rate limited (attempt {attempt}/{max_retries}), retrying in {wait:.1f}s")
            await asyncio.sleep(wait)


class RepositoryTreeScanner:
    def __init__(
        self,
        client: RepositoryServiceClient,
        source: ElementSource,
        owner: str,
        repo: str,
        root: str = "",
        batch_size: int = 5,
        batch_delay_seconds: float = 0.1,
        max_retries: int = 3,
        max_backoff_seconds: float = 30.0,
        file_extensions: Iterable[str] = (".md", ".yaml", ".yml"),
    ):
        self.client = client
        self.source = source
        self.owner = owner
        self.repo = repo
        self.root = root.strip("/")
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.file_extensions = tuple(ext.lower() for ext in file_extensions)

    async def _call(self, func: Callable[..., Awaitable[Any]], *args: Any, deadline: Optional[float] = None) -> Any:
        return await call_with_rate_limit_retry(
            func,
            *args,
            max_retries=self.max_retries,
            max_backoff_seconds=self.max_backoff_seconds,
            deadline=deadline,
        )

    def _type_path(self, element_type: ElementType) -> str:
        return f"{self.root}/{element_type.value}" if self.root else element_type.value

    async def _list_files(self, path: str, depth: int = 0, deadline: Optional[float] = None) -> List[TreeItem]:
        items = await self._call(self.client.list_tree, self.owner, self.repo, path, deadline=deadline)
        files: List[TreeItem] = []
        for item in items:
            if item.type == "file" and item.path.lower().endswith(self.file_extensions):
                files.append(item)
            elif item.type == "dir" and depth < MAX_SUBDIRECTORY_DEPTH:
                try:
                    files.extend(await self._list_files(item.path, depth + 1, deadline))
                except NotFound:
                    continue
        return files

    async def list_element_files(self, deadline: Optional[float] = None) -> List[Tuple[ElementType, TreeItem]]:
        files: List[Tuple[ElementType, TreeItem]] = []
        for element_type in ElementType:
            path = self._type_path(element_type)
            try:
                items = await self._list_files(path, deadline=deadline)
            except NotFound:
                logger.debug(f"{self.owner}/{self.repo} has no {path} directory")
                continue
            files.extend((element_type, item) for item in items)
        return files

    async def read_file(
        self, element_type: ElementType, item: TreeItem, cycle=None, deadline: Optional[float] = None
    ) -> Optional[IndexEntry]:
        """
        Build the entry for one remote file, or None when it vanished or its
        metadata does not fit the element type.
        """
        try:
            data = await self._call(self.client.get_file_metadata, self.owner, self.repo, item.path, deadline=deadline)
        except NotFound:
            logger.debug(f"{item.path} disappeared during listing")
            return None

        try:
            return build_entry(
                self.source,
                element_type,
                f"{self.owner}/{self.repo}/{item.path}",
                data.get("metadata") or {},
                content_fingerprint=data.get("content_fingerprint"),
                last_seen=cycle,
                last_modified=parse_timestamp(data.get("last_modified")),
            )
        except ValidationError as e:
            logger.warning(f"Skipping remote element {item.path}: {e.error_count()} invalid metadata field(s)")
            return None

    async def scan(self, deadline: Optional[float] = None) -> List[IndexEntry]:
        """
        List every element file and read its metadata in batches.

        Errors other than a missing file or bad metadata abort the scan.
        ``deadline`` (event loop time) bounds rate-limit waits.
        """
        cycle = utc_now()
        files = await self.list_element_files(deadline)

        entries: List[IndexEntry] = []
        for start in range(0, len(files), self.batch_size):
            if start and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)
            batch = files[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self.read_file(element_type, item, cycle, deadline) for element_type, item in batch),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
                if result is not None:
                    entries.append(result)

        return dedupe_by_id(entries)
