"""
Name normalization shared by the snapshot builder and the lookup path.

Both sides must fold names identically, otherwise exact matches silently
degrade to fuzzy ones.
"""
import re
import unicodedata
from typing import Optional

_WHITESPACE_RE = re.compile(r"\s+")


def strip_diacritics(value: str) -> str:
    """Decompose and drop combining marks ("Zürich" -> "Zurich")."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(value: Optional[str]) -> str:
    """Case-fold, strip diacritics and collapse whitespace. Returns "" for blank input."""
    if not value:
        return ""
    folded = strip_diacritics(value).casefold()
    return _WHITESPACE_RE.sub(" ", folded).strip()
