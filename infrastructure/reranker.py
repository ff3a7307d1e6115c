"""Lexical term-frequency reranker."""
import logging
from typing import List

from core.interfaces import IRanker
from core.domain import SearchHit
from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)


def query_terms(query_text: str) -> List[str]:
    """Lower-cased whitespace terms; duplicates are kept on purpose."""
    return (query_text or "").lower().split()


def term_frequency(content: str, terms: List[str]) -> int:
    """Literal substring occurrences of every term inside content."""
    haystack = content.lower()
    return sum(haystack.count(term) for term in terms)


class TermFrequencyReranker(IRanker):
    """
    combined = similarity + weight * term_frequency

    Nudges exact keyword matches above semantically-close but lexically-weak
    chunks. With the default weight each literal match is worth a tenth of a
    similarity point.
    """

    def __init__(self, weight: float = 0.1):
        self.weight = weight

    def rank(self, hits: List[SearchHit], query_text: str) -> List[SearchHit]:
        if not hits:
            return []

        terms = query_terms(query_text)
        for hit in hits:
            tf = term_frequency(hit.chunk.content, terms) if terms else 0
            hit.combined_score = hit.similarity + self.weight * tf

        ranked = sorted(
            hits,
            key=lambda h: (h.combined_score, h.similarity),
            reverse=True
        )
        logger.debug(f"[RERANK] Ranked {len(ranked)} hits for {len(terms)} query terms")
        return ranked
