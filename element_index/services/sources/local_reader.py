"""
Enumerate element files on local disk.

Layout: <local_root>/<element type>/<file>. The listing is rebuilt on every
call and never cached.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import ValidationError

from element_index.domain.errors import ElementStoreError, InvalidFormat
from element_index.domain.models import ElementSource, ElementType, IndexEntry, utc_now
from element_index.services.sources.entries import build_entry, dedupe_by_id
from element_index.storage.element_store import ElementStoreReader, FrontMatterElementStore

logger = logging.getLogger(__name__)


class LocalSourceReader:
    def __init__(
        self,
        root: Path,
        store: Optional[ElementStoreReader] = None,
        file_extensions: Iterable[str] = (".md", ".yaml", ".yml"),
    ):
        self.root = Path(root).expanduser()
        self.store = store or FrontMatterElementStore()
        self.file_extensions = tuple(ext.lower() for ext in file_extensions)

    def _element_files(self, element_type: ElementType) -> List[Path]:
        type_dir = self.root / element_type.value
        if not type_dir.is_dir():
            return []
        return sorted(
            p for p in type_dir.iterdir()
            if p.is_file() and p.suffix.lower() in self.file_extensions and not p.name.startswith(".")
        )

    def read_entry(self, path: Path, element_type: ElementType, last_seen=None) -> IndexEntry:
        """
        Build the entry for one file. Raises NotReadable or InvalidFormat.
        """
        element = self.store.read_local_element(path)
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            modified = None
        try:
            return build_entry(
                ElementSource.LOCAL,
                element_type,
                str(path),
                element.metadata,
                content_fingerprint=element.content_fingerprint,
                last_seen=last_seen,
                last_modified=modified,
            )
        except ValidationError as e:
            raise InvalidFormat(str(path), f"metadata does not match {element_type.value} shape: {e}") from e

    def list_local(self, element_types: Optional[Iterable[ElementType]] = None) -> List[IndexEntry]:
        """
        Read every local element. Unreadable or malformed files are skipped.
        """
        if not self.root.is_dir():
            logger.debug(f"Local element root {self.root} does not exist")
            return []

        cycle = utc_now()
        entries: List[IndexEntry] = []
        for element_type in element_types or list(ElementType):
            for path in self._element_files(element_type):
                try:
                    entries.append(self.read_entry(path, element_type, last_seen=cycle))
                except ElementStoreError as e:
                    logger.warning(f"Skipping local element {path}: {e}")

        return dedupe_by_id(entries)
