"""
Exception hierarchy for the element index.

Readers raise these; the index manager catches them per source and degrades
that source instead of failing the query.
"""

from __future__ import annotations

from typing import Optional


class ElementIndexError(Exception):
    """Base exception for all element index errors."""


# ---------------------------------------------------------------------------
# Element store (local files)
# ---------------------------------------------------------------------------


class ElementStoreError(ElementIndexError):
    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class NotReadable(ElementStoreError):
    """The element file exists but could not be read."""


class InvalidFormat(ElementStoreError):
    """The element file was read but its front-matter is missing or malformed."""


# ---------------------------------------------------------------------------
# Repository service
# ---------------------------------------------------------------------------


class RepositoryServiceError(ElementIndexError):
    """Base class for failures reported by the repository service client."""


class RateLimited(RepositoryServiceError):
    def __init__(self, retry_after: Optional[float] = None, message: str = "Rate limit exceeded"):
        super().__init__(message if retry_after is None else f"{message} (retry after {retry_after:.0f}s)")
        self.retry_after = retry_after


class NotFound(RepositoryServiceError):
    pass


class Unauthorized(RepositoryServiceError):
    pass


class NetworkError(RepositoryServiceError):
    pass


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


class SchemaInvalid(ElementIndexError):
    """A fetched document did not match the expected schema."""


class SourceUnavailable(ElementIndexError):
    """A source produced neither a fresh nor a stale view."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source
