"""Text normalisation and hashing shared by the indexer and the scanner."""

from __future__ import annotations

import hashlib
import re

_LINE_BREAKS = re.compile(r"\r\n?")
_HORIZONTAL_SPACE = re.compile(r"[^\S\n]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Normalise extracted text for indexing.

    Line endings become ``\\n``, runs of other whitespace become one space,
    every line is trimmed, runs of three or more newlines shrink to two, and
    the result is trimmed. Applying it twice changes nothing.
    """

    normalized = _LINE_BREAKS.sub("\n", text)
    normalized = _HORIZONTAL_SPACE.sub(" ", normalized)
    normalized = "\n".join(line.strip() for line in normalized.split("\n"))
    normalized = _EXCESS_NEWLINES.sub("\n\n", normalized)
    return normalized.strip()


def normalize_for_hash(text: str) -> str:
    return " ".join(text.lower().split())


def content_hash(text: str) -> str:
    """SHA-256 of the lowercased, whitespace-collapsed text."""

    return hashlib.sha256(normalize_for_hash(text).encode("utf-8")).hexdigest()
