"""Text normalisation helpers shared across the pipeline."""

from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher

from bs4 import BeautifulSoup

_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-zA-Z0-9]")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_DASH_RE = re.compile(r"[\s_-]+")


def clean_text(value: object) -> str:
    """Strip markup and collapse whitespace, as for a single-line text field."""

    if value is None:
        return ""
    text = str(value)
    if "<" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii").lower()
    ascii_text = _SLUG_STRIP_RE.sub("", ascii_text)
    return _SLUG_DASH_RE.sub("-", ascii_text).strip("-")


def normalize_key(value: str) -> str:
    return _NON_ALNUM_RE.sub("", value).lower()


def similarity_percent(first: str, second: str) -> float:
    """Return the 0-100 matching-blocks similarity of two strings, order independent."""

    if not first and not second:
        return 100.0
    if not first or not second:
        return 0.0
    forward = SequenceMatcher(None, first, second, autojunk=False).ratio()
    backward = SequenceMatcher(None, second, first, autojunk=False).ratio()
    return max(forward, backward) * 100.0


def ucfirst(value: str) -> str:
    return value[:1].upper() + value[1:] if value else value


__all__ = ["clean_text", "normalize_key", "similarity_percent", "slugify", "ucfirst"]
