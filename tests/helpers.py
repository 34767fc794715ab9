"""Fakes and builders shared by the element index tests."""
import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import yaml

from element_index.domain.element_utils import fingerprint_content
from element_index.domain.errors import NetworkError, NotFound
from element_index.domain.models import AuditEvent, TreeItem, utc_now
from element_index.services.audit import AuditSink
from element_index.services.caching import CacheLayer
from element_index.services.repository_client import RepositoryServiceClient
from element_index.storage.element_store import FrontMatterElementStore

COLLECTION_URL = "https://collection.test/public/collection-index.json"


def element_text(metadata: Dict[str, Any], body: str = "Body text.\n") -> str:
    return "---\n" + yaml.safe_dump(metadata, sort_keys=False) + "---\n" + body


def write_element(root: Path, element_type: str, filename: str, metadata: Dict[str, Any], body: str = "Body text.\n") -> Path:
    type_dir = Path(root) / element_type
    type_dir.mkdir(parents=True, exist_ok=True)
    path = type_dir / filename
    path.write_text(element_text(metadata, body), encoding="utf-8")
    return path


def expire_record(cache: CacheLayer, key: str) -> None:
    """Age the record under ``key`` past its TTL without invalidating it."""
    current = cache.get_stale(key)
    cache.set(key, current.model_copy(update={"fetched_at": utc_now() - timedelta(hours=2)}))


def collection_document(index: Dict[str, List[Dict[str, Any]]], **overrides: Any) -> Dict[str, Any]:
    document = {
        "version": "1.0.0",
        "generated": "2025-08-01T00:00:00Z",
        "total_elements": sum(len(items) for items in index.values()),
        "index": index,
        "metadata": {"build_time_ms": 12},
    }
    document.update(overrides)
    return document


class FakeRepositoryClient(RepositoryServiceClient):
    """
    In-memory repository. ``files`` maps repository paths to file text.
    ``errors`` are raised one per call, in order, before anything is served.
    """

    def __init__(self, files: Optional[Dict[str, str]] = None, errors: Optional[List[Exception]] = None, delay: float = 0.0):
        self.files = dict(files or {})
        self.errors = list(errors or [])
        self.delay = delay
        self.list_calls = 0
        self.metadata_calls = 0
        self.closed = False

    async def _before_call(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)

    async def list_tree(self, owner: str, repo: str, path: str) -> List[TreeItem]:
        self.list_calls += 1
        await self._before_call()
        prefix = path.strip("/") + "/"
        children: Dict[str, TreeItem] = {}
        for file_path in sorted(self.files):
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            if "/" in rest:
                child = prefix + rest.split("/", 1)[0]
                children.setdefault(child, TreeItem(path=child, type="dir"))
            else:
                children[file_path] = TreeItem(path=file_path, type="file", sha=fingerprint_content(self.files[file_path])[:40])
        if not children:
            raise NotFound(f"{owner}/{repo}/{path} not found")
        return list(children.values())

    async def get_file_metadata(self, owner: str, repo: str, path: str) -> Dict[str, Any]:
        self.metadata_calls += 1
        await self._before_call()
        if path not in self.files:
            raise NotFound(f"{owner}/{repo}/{path} not found")
        text = self.files[path]
        return {
            "path": path,
            "sha": None,
            "metadata": FrontMatterElementStore.parse_metadata(text, source=path),
            "content_fingerprint": fingerprint_content(text),
            "last_modified": None,
        }

    async def aclose(self) -> None:
        self.closed = True


class FailingRepositoryClient(RepositoryServiceClient):
    def __init__(self):
        self.calls = 0

    async def list_tree(self, owner, repo, path):
        self.calls += 1
        raise NetworkError("repository service unreachable")

    async def get_file_metadata(self, owner, repo, path):
        self.calls += 1
        raise NetworkError("repository service unreachable")


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events: List[AuditEvent] = []

    async def log_event(self, event: AuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [e.type for e in self.events]


class FakeCollectionServer:
    """Serves the collection index document through httpx.MockTransport."""

    def __init__(self, document: Optional[Dict[str, Any]] = None, status_code: int = 200, etag: Optional[str] = '"v1"'):
        self.document = document if document is not None else collection_document({})
        self.status_codes: List[int] = []
        self.status_code = status_code
        self.etag = etag
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code = self.status_codes.pop(0) if self.status_codes else self.status_code
        if status_code != 200:
            return httpx.Response(status_code)
        if self.etag and request.headers.get("if-none-match") == self.etag:
            return httpx.Response(304)
        headers = {"ETag": self.etag} if self.etag else {}
        return httpx.Response(200, json=self.document, headers=headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


