import hashlib
import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Tuple

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_WHITESPACE_RE = re.compile(r"[ \t]+")
_VERSION_RE = re.compile(r"^v?(\d+(?:\.\d+){0,2})(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$")

# Common Cyrillic/Greek homoglyphs of Latin letters (lower-case after folding).
CONFUSABLES: Dict[str, str] = {
    "\u0430": "a",  # Cyrillic a
    "\u0435": "e",  # Cyrillic ie
    "\u043e": "o",  # Cyrillic o
    "\u0440": "p",  # Cyrillic er
    "\u0441": "c",  # Cyrillic es
    "\u0443": "y",  # Cyrillic u
    "\u0445": "x",  # Cyrillic ha
    "\u0456": "i",  # Cyrillic byelorussian-ukrainian i
    "\u0458": "j",  # Cyrillic je
    "\u0455": "s",  # Cyrillic dze
    "\u04bb": "h",  # Cyrillic shha
    "\u0501": "d",  # Cyrillic komi de
    "\u03b1": "a",  # Greek alpha
    "\u03bf": "o",  # Greek omicron
    "\u03b9": "i",  # Greek iota
    "\u03ba": "k",  # Greek kappa
    "\u03bd": "v",  # Greek nu
    "\u03c1": "p",  # Greek rho
    "\u03c4": "t",  # Greek tau
    "\u03c5": "u",  # Greek upsilon
}


def strip_nulls(value: Any) -> Any:
    """
    Recursively remove keys with value None from dictionaries.

    Lists are preserved, but their elements are also cleaned.
    """
    if isinstance(value, dict):
        return {k: strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_nulls(v) for v in value]
    return value


def fold_confusables(value: str) -> str:
    """Map common Cyrillic/Greek look-alikes of Latin letters onto the Latin letter."""
    return "".join(CONFUSABLES.get(ch, ch) for ch in value)


def _case_fold(value: Optional[str]) -> str:
    if not value:
        return ""
    return unicodedata.normalize("NFKC", value).casefold().strip()


def fold(value: Optional[str]) -> str:
    """
    Compatibility-normalize, case-fold and confusable-fold a value for comparison.

    Element fields go through the same folding as normalized queries.
    """
    return fold_confusables(_case_fold(value))


def slugify(name: str) -> str:
    """
    'Safe Roundtrip Tester' -> 'safe-roundtrip-tester'.

    Matches the file naming used for elements on disk and in remote trees.
    Names without Latin letters or digits have an empty slug.
    """
    return _SLUG_RE.sub("-", _case_fold(name)).strip("-")


def make_entry_id(source: str, element_type: str, name: str) -> str:
    return f"{source}:{element_type}:{slugify(name) or fold(name)}"


def name_from_filename(filename: str) -> str:
    """Fallback element name derived from a file stem ('code-reviewer.md' -> 'code reviewer')."""
    stem = filename.rsplit("/", 1)[-1]
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    return stem.replace("-", " ").replace("_", " ").strip()


def normalize_content(text: str) -> str:
    """Normalization applied before fingerprinting; removes variance that does not change meaning."""
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_WHITESPACE_RE.sub(" ", line).rstrip() for line in text.split("\n")]
    return "\n".join(lines).strip()


def fingerprint_content(text: str) -> str:
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def split_front_matter(text: str) -> Tuple[Optional[str], str]:
    """
    Split '---\\n<yaml>\\n---\\n<body>' into (yaml, body).

    Returns (None, text) when the text carries no front-matter block.
    """
    if not text.startswith("---"):
        return None, text
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return None, text
    for i in range(1, len(lines)):
        if lines[i].strip() in ("---", "..."):
            return "\n".join(lines[1:i]), "\n".join(lines[i + 1 :])
    return None, text


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def parse_version(value: Optional[str]) -> Optional[tuple]:
    """
    Convert a semantic version string into a sortable tuple.

    Missing minor/patch parts count as zero. A release sorts after any of its
    pre-releases. Returns None for values that are not versions.
    """
    if value is None:
        return None
    match = _VERSION_RE.match(str(value).strip())
    if not match:
        return None
    core = [int(part) for part in match.group(1).split(".")]
    while len(core) < 3:
        core.append(0)
    pre = match.group(2)
    if pre is None:
        return (tuple(core), (1,))
    parts = []
    for part in pre.split("."):
        try:
            parts.append((0, int(part), ""))
        except ValueError:
            parts.append((1, 0, part))
    return (tuple(core), (0, tuple(parts)))


def compare_versions(a: Optional[str], b: Optional[str]) -> Optional[int]:
    """
    Return -1, 0 or 1 comparing ``a`` to ``b``, or None when either is not a version.
    """
    ka = parse_version(a)
    kb = parse_version(b)
    if ka is None or kb is None:
        return None
    if ka == kb:
        return 0
    return 1 if ka > kb else -1


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def match_text(value: str, keyword: str, match_type: Optional[str] = None) -> bool:
    """
    Apply simple text matching rules to a single, already folded value.
    """
    if keyword is None:
        return False
    if (match_type or "Substring").strip() == "StartsWith":
        return value.startswith(keyword)
    return keyword in value


def score_fields(
    query: str,
    name: str,
    tag_fields: Iterable[Tuple[str, Iterable[str]]],
    description: Optional[str],
    name_weight: float,
    tag_weight: float,
    description_weight: float,
) -> Tuple[float, List[str]]:
    """
    Field-weighted relevance of one element against a normalized query.

    ``tag_fields`` is a sequence of (reason, values) pairs such as
    ("tag", ["writing", "fiction"]). Name matches weigh most, then tag-like
    fields, then the description. An empty query matches everything with 1.0.
    """
    if not query:
        return 1.0, []

    tokens = [t for t in query.split() if t]
    folded_name = fold(name)
    slug = slugify(name)
    folded_description = fold(description)
    folded_tags = [(reason, [fold(v) for v in values if v]) for reason, values in tag_fields]

    score = 0.0
    reasons: List[str] = []

    def note(reason: str) -> None:
        if reason not in reasons:
            reasons.append(reason)

    query_slug = slugify(query)
    if folded_name == query or (query_slug and slug == query_slug):
        score += name_weight * 2
        note("exact name")
    elif len(tokens) > 1 and query in folded_name:
        score += name_weight
        note("name")

    for token in tokens:
        if folded_name == token:
            score += name_weight
            note("name")
        elif match_text(folded_name, token, "StartsWith"):
            score += name_weight * 0.5
            note("name")
        elif match_text(folded_name, token) or (slugify(token) and slugify(token) in slug):
            score += name_weight * 0.2
            note("name")

        for reason, values in folded_tags:
            if any(match_text(v, token) for v in values):
                score += tag_weight
                note(reason)

        if folded_description and match_text(folded_description, token):
            score += description_weight
            note("description")

    return round(score, 6), reasons
