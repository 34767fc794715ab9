"""
Normalization of caller-supplied query text.

Every query passes through a QueryNormalizer before it is compared against
element fields or written to a log line.
"""
from __future__ import annotations

import re
import unicodedata
from abc import ABC, abstractmethod
from typing import List

from element_index.domain.element_utils import fold_confusables
from element_index.domain.models import NormalizedText

# Zero-width characters and joiners.
_ZERO_WIDTH = {
    "\u200b", "\u200c", "\u200d", "\u2060", "\ufeff", "\u180e",
}

# Bidirectional embeddings, overrides and isolates.
_BIDI_CONTROLS = {
    "\u202a", "\u202b", "\u202c", "\u202d", "\u202e",
    "\u2066", "\u2067", "\u2068", "\u2069",
    "\u200e", "\u200f", "\u061c",
}

_WHITESPACE_RE = re.compile(r"\s+")

MAX_QUERY_LENGTH = 500


class QueryNormalizer(ABC):
    """
    Abstract normalizer for query text.
    """

    @abstractmethod
    def normalize(self, text: str) -> NormalizedText:
        """Return the normalized form of ``text`` and any issues found."""
        pass


class UnicodeQueryNormalizer(QueryNormalizer):
    """
    Trim, NFKC, strip invisible/direction controls, fold confusables, case-fold.

    Text that needed anything beyond plain case/space folding is reported as
    invalid but still returned sanitized.
    """

    def __init__(self, max_length: int = MAX_QUERY_LENGTH):
        self.max_length = max_length

    def normalize(self, text: str) -> NormalizedText:
        issues: List[str] = []
        value = text or ""

        if len(value) > self.max_length:
            value = value[: self.max_length]
            issues.append("too long")

        nfkc = unicodedata.normalize("NFKC", value)
        if nfkc != unicodedata.normalize("NFC", value):
            issues.append("compatibility characters")
        value = nfkc

        cleaned = []
        zero_width = bidi = control = False
        for ch in value:
            if ch in _ZERO_WIDTH:
                zero_width = True
                continue
            if ch in _BIDI_CONTROLS:
                bidi = True
                continue
            if unicodedata.category(ch) == "Cc" and not ch.isspace():
                control = True
                continue
            cleaned.append(ch)
        if zero_width:
            issues.append("zero-width characters")
        if bidi:
            issues.append("direction override characters")
        if control:
            issues.append("control characters")

        value = "".join(cleaned).casefold()

        folded = fold_confusables(value)
        if folded != value:
            issues.append("confusable characters")

        folded = _WHITESPACE_RE.sub(" ", folded).strip()
        return NormalizedText(is_valid=not issues, normalized_text=folded, issues=issues)
