"""
Client for the hosted repository service (GitHub-style REST API).

Used by the portfolio reader and by the collection fallback scan to list
directories and read element metadata from remote repositories.
"""
from __future__ import annotations

import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from element_index.domain.element_utils import fingerprint_content
from element_index.domain.errors import (
    ElementIndexError,
    NetworkError,
    NotFound,
    RateLimited,
    RepositoryServiceError,
    Unauthorized,
)
from element_index.domain.models import TreeItem
from element_index.storage.element_store import FrontMatterElementStore

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"


class RepositoryServiceClient(ABC):
    """
    Abstract access to a remote repository's directory tree and file metadata.
    """

    @abstractmethod
    async def list_tree(self, owner: str, repo: str, path: str) -> List[TreeItem]:
        """List the direct children of ``path``. Raises NotFound when it does not exist."""
        pass

    @abstractmethod
    async def get_file_metadata(self, owner: str, repo: str, path: str) -> Dict[str, Any]:
        """
        Read one element file.

        Returns a dict with keys:
            path, sha, metadata (declared front-matter mapping),
            content_fingerprint, last_modified (ISO string or None)
        """
        pass

    async def aclose(self) -> None:
        """Release any network resources held by the client."""
        return None


class GitHubRepositoryClient(RepositoryServiceClient):
    """
    RepositoryServiceClient over the GitHub contents API using httpx.

    A client passed in by the caller is not closed by ``aclose``.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = DEFAULT_API_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=True, timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "element-index",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, owner: str, repo: str, path: str) -> httpx.Response:
        url = f"{self.base_url}/repos/{owner}/{repo}/contents/{path.strip('/')}"
        try:
            response = await self._client.get(url, headers=self._headers())
        except httpx.TransportError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e
        self._raise_for_status(response, url)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"{response.request.url} returned a non-JSON body") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response, url: str) -> None:
        status = response.status_code
        if status < 400:
            return

        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            raise RateLimited(_retry_after(response))
        if status == 404:
            raise NotFound(f"{url} not found")
        if status in (401, 403):
            raise Unauthorized(f"{url} returned {status}")
        raise NetworkError(f"{url} returned {status}")

    async def list_tree(self, owner: str, repo: str, path: str) -> List[TreeItem]:
        response = await self._get(owner, repo, path)
        payload = self._json(response)
        if not isinstance(payload, list):
            # The path names a file, not a directory.
            raise NotFound(f"{owner}/{repo}/{path} is not a directory")
        return [
            TreeItem(path=item.get("path", ""), type=item.get("type", "file"), sha=item.get("sha"))
            for item in payload
            if isinstance(item, dict)
        ]

    async def get_file_metadata(self, owner: str, repo: str, path: str) -> Dict[str, Any]:
        response = await self._get(owner, repo, path)
        payload = self._json(response)
        if not isinstance(payload, dict) or "content" not in payload:
            raise RepositoryServiceError(f"{owner}/{repo}/{path} returned no file content")

        try:
            text = base64.b64decode(payload["content"]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise RepositoryServiceError(f"{owner}/{repo}/{path} content could not be decoded: {e}") from e

        try:
            metadata = FrontMatterElementStore.parse_metadata(
                text, source=path, whole_document=path.lower().endswith((".yaml", ".yml"))
            )
        except ElementIndexError as e:
            raise RepositoryServiceError(str(e)) from e

        last_modified = response.headers.get("last-modified")
        if last_modified:
            try:
                last_modified = parsedate_to_datetime(last_modified).isoformat()
            except (TypeError, ValueError):
                last_modified = None

        return {
            "path": payload.get("path", path),
            "sha": payload.get("sha"),
            "metadata": metadata,
            "content_fingerprint": fingerprint_content(text),
            "last_modified": last_modified,
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value:
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(0.0, float(reset) - time.time())
        except ValueError:
            pass
    return None
