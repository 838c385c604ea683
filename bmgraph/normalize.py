"""Name normalization used as the catalog's dedupe key."""

import re

_NOISE_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_entity_name(name: str) -> str:
    """Map a raw entity name to its canonical dedupe key.

    Case-folds, strips punctuation (anything that is not a letter, digit or
    whitespace), collapses runs of whitespace and trims. ``"The Hobbit"``,
    ``" the hobbit "`` and ``"THE HOBBIT!"`` all become ``"the hobbit"``.
    Returns an empty string when nothing meaningful is left.
    """
    folded = name.casefold()
    folded = _NOISE_RE.sub("", folded)
    return _WHITESPACE_RE.sub(" ", folded).strip()


def extraction_dedupe_key(entity_type: str, name: str) -> str:
    """Key for deduplicating entities within a single extraction call."""
    return f"{entity_type}:{name.lower()}"
