from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

import yaml

from element_index.domain.element_utils import fingerprint_content, split_front_matter
from element_index.domain.errors import InvalidFormat, NotReadable
from element_index.domain.models import LocalElement

YAML_SUFFIXES = (".yaml", ".yml")


class ElementStoreReader(ABC):
    """
    Abstract base class for reading element files from local storage.
    """

    @abstractmethod
    def read_local_element(self, path: Path) -> LocalElement:
        """
        Read one element file and return its declared metadata and content fingerprint.

        Raises NotReadable when the file cannot be read and InvalidFormat when
        its metadata block is missing or malformed.
        """
        pass


class FrontMatterElementStore(ElementStoreReader):
    """
    Reads Markdown elements with a YAML front-matter block, and plain YAML elements.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def read_local_element(self, path: Path) -> LocalElement:
        path = Path(path)
        try:
            text = path.read_text(encoding=self.encoding)
        except (OSError, UnicodeDecodeError) as e:
            raise NotReadable(str(path), str(e)) from e

        metadata = self.parse_metadata(text, source=str(path), whole_document=path.suffix.lower() in YAML_SUFFIXES)
        return LocalElement(metadata=metadata, content_fingerprint=fingerprint_content(text))

    @staticmethod
    def parse_metadata(text: str, source: str = "<memory>", whole_document: bool = False) -> Dict[str, Any]:
        """
        Extract the metadata mapping from element text.

        Markdown files carry it between '---' fences; YAML files may also be
        a bare mapping.
        """
        header, _body = split_front_matter(text)
        if header is None:
            if not whole_document:
                raise InvalidFormat(source, "missing front-matter block")
            header = text

        try:
            data = yaml.safe_load(header)
        except yaml.YAMLError as e:
            raise InvalidFormat(source, f"invalid YAML front-matter: {e}") from e

        if not isinstance(data, dict):
            raise InvalidFormat(source, "front-matter is not a mapping")
        return data
