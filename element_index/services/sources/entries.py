"""
Helpers shared by the source readers to turn raw metadata into IndexEntries.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from element_index.domain.element_utils import make_entry_id, name_from_filename
from element_index.domain.models import (
    ElementSource,
    ElementType,
    IndexEntry,
    build_metadata,
    utc_now,
)

logger = logging.getLogger(__name__)


def build_entry(
    source: ElementSource,
    element_type: ElementType,
    locator: str,
    raw_metadata: Dict[str, Any],
    content_fingerprint: Optional[str] = None,
    last_seen: Optional[datetime] = None,
    last_modified: Optional[datetime] = None,
) -> IndexEntry:
    """
    Build one entry from declared metadata.

    A missing name falls back to the file name. Raises pydantic.ValidationError
    when the metadata does not fit the element type's shape.
    """
    raw = dict(raw_metadata or {})
    name = str(raw.get("name") or "").strip() or name_from_filename(locator)
    raw["name"] = name
    metadata = build_metadata(element_type, raw)
    return IndexEntry(
        id=make_entry_id(source.value, element_type.value, name),
        name=name,
        element_type=element_type,
        source=source,
        version=metadata.version,
        locator=locator,
        content_fingerprint=content_fingerprint,
        metadata=metadata,
        last_seen=last_seen or utc_now(),
        last_modified=last_modified,
    )


def dedupe_by_id(entries: Iterable[IndexEntry]) -> List[IndexEntry]:
    """
    Keep one entry per id. The entry with the lowest locator wins; the rest
    are logged and dropped.
    """
    kept: Dict[str, IndexEntry] = {}
    for entry in sorted(entries, key=lambda e: e.locator):
        existing = kept.get(entry.id)
        if existing is not None:
            logger.warning(
                f"Duplicate element id {entry.id} in {entry.source.value}: "
                f"keeping {existing.locator}, ignoring {entry.locator}"
            )
            continue
        kept[entry.id] = entry
    return list(kept.values())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
