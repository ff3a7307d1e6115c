"""Text extraction and boundary-aware chunking for uploaded files

Extraction normalizes raw bytes into plain text per media type. Binary office
formats have no parser yet: they yield a labelled placeholder so the rest of
the pipeline still receives input.

Chunking walks the text with a fixed window and prefers to cut at the last
sentence terminator, then the last space, as long as the cut lies past half
of the window. Adjacent chunks share up to `overlap` characters.
"""
from __future__ import annotations

import json
import logging
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from core.exceptions import UnsupportedMediaType
from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

# -----------------------------
# Configuration
# -----------------------------
SENTENCE_TERMINATORS = (".", "!", "?")
BOUNDARY_MIN_RATIO = 0.5

PLACEHOLDER_TYPES = {
    "application/pdf": "PDF file",
    "application/msword": "Word document",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "Word document",
    "application/vnd.ms-excel": "Excel file",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "Excel file",
}

TEXT_TYPES = {"application/json", "text/csv", "text/html"}

_SPACE_RE = re.compile(r"\s+")
NON_TEXT_TAGS = ["script", "style", "noscript", "template"]


def _normalize_media_type(media_type: Optional[str]) -> str:
    """Lower-case and drop parameters such as '; charset=utf-8'."""
    return (media_type or "").split(";")[0].strip().lower()


def can_process_media_type(media_type: Optional[str]) -> bool:
    """True if the extractor accepts this media type (real text or placeholder)."""
    mt = _normalize_media_type(media_type)
    return mt.startswith("text/") or mt in TEXT_TYPES or mt in PLACEHOLDER_TYPES


def should_auto_process(media_type: Optional[str]) -> bool:
    """Only text-like uploads are queued automatically; office formats wait for an explicit request."""
    return _normalize_media_type(media_type) in settings.AUTO_PROCESS_MEDIA_TYPES


# -----------------------------
# Text Extraction
# -----------------------------
class TextExtractor:
    """Pure bytes + media type -> text conversion."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def _decode(self, content: bytes) -> str:
        return content.decode(self.encoding, errors="replace")

    @staticmethod
    def _html_text(html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(NON_TEXT_TAGS):
            tag.decompose()
        return _SPACE_RE.sub(" ", soup.get_text(separator=" ")).strip()

    def extract(self, content: bytes, media_type: str, filename: str = "") -> str:
        mt = _normalize_media_type(media_type)

        if mt == "text/html":
            return self._html_text(self._decode(content))

        if mt == "application/json":
            raw = self._decode(content)
            try:
                return json.dumps(json.loads(raw), indent=2)
            except ValueError:
                return raw

        if mt.startswith("text/"):
            return self._decode(content)

        label = PLACEHOLDER_TYPES.get(mt)
        if label:
            logger.info(f"No parser for {mt}; using placeholder text for '{filename}'")
            return f"{label}: {filename}\n[{label} content extraction requires additional processing]"

        raise UnsupportedMediaType(mt)


# -----------------------------
# Chunking
# -----------------------------
class TextChunker:
    """
    Splits text into overlapping, boundary-aware segments.

    Every non-empty input produces at least one chunk. A chunk may exceed
    `max_size` by one character when a terminator sits exactly on the cut.
    """

    def __init__(self, max_size: int = 1000, overlap: int = 100):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if overlap < 0:
            raise ValueError("overlap must not be negative")
        self.max_size = max_size
        self.overlap = overlap

    def _find_cut(self, text: str, start: int, end: int) -> int:
        """Pick the end offset for the window [start, end)."""
        min_cut = start + self.max_size * BOUNDARY_MIN_RATIO

        # Terminator search includes the character at `end` (lands one past the window)
        sentence_end = max(text.rfind(t, start, end + 1) for t in SENTENCE_TERMINATORS)
        if sentence_end > min_cut:
            return sentence_end + 1

        word_boundary = text.rfind(" ", start, end + 1)
        if word_boundary > min_cut:
            return word_boundary

        return end

    def split(self, text: str) -> List[str]:
        chunks: List[str] = []
        length = len(text)
        start = 0

        while start < length:
            end = start + self.max_size
            if end < length:
                end = self._find_cut(text, start, end)

            piece = text[start:end].strip()
            if piece:
                chunks.append(piece)

            if end >= length:
                break

            next_start = end - self.overlap
            # Overlap larger than the chunk would stall the walk
            start = next_start if next_start > start else end

        return chunks


def chunk_text(text: str, max_size: int = 1000, overlap: int = 100) -> List[str]:
    """Convenience wrapper around TextChunker.split."""
    return TextChunker(max_size=max_size, overlap=overlap).split(text)
