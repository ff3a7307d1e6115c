"""Tests for query-path search: threshold validation, query processing and the ranked search."""

import math

import pytest

from core.domain import DocumentChunk
from core.exceptions import EmbeddingRateLimitError
from infrastructure.reranker import TermFrequencyReranker
from infrastructure.vector_stores import chunk_id
from services.search_service import (
    DocumentSearchService, process_search_query, validate_similarity_threshold
)
from tests.fakes import FailingEmbeddingService


class TestThresholdValidation:

    @pytest.mark.parametrize("value", [0, 1, 0.5])
    def test_in_range_values_are_valid(self, value):
        result = validate_similarity_threshold(value)

        assert result.valid is True
        assert result.normalized == value
        assert result.error is None

    @pytest.mark.parametrize("value,clamped", [(1.5, 1.0), (-0.5, 0.0)])
    def test_out_of_range_values_are_clamped(self, value, clamped):
        result = validate_similarity_threshold(value)

        assert result.valid is False
        assert result.normalized == clamped
        assert result.error

    @pytest.mark.parametrize("value", [math.nan, "0.5", None, True])
    def test_non_numbers_fall_back_to_default(self, value):
        result = validate_similarity_threshold(value)

        assert result.valid is False
        assert result.normalized == 0.78


class TestQueryProcessing:

    def test_clean_query_and_terms(self):
        result = process_search_query("  Pump   SEAL replacement ")

        assert result.clean_query == "pump   seal replacement"
        assert result.terms == ["pump", "seal", "replacement"]
        assert result.has_special_chars is False

    def test_special_characters_flagged(self):
        assert process_search_query("what's the torque?").has_special_chars is True


async def _store_texts(store, embedder, file_id, texts):
    vectors = await embedder.generate_embeddings(texts)
    await store.insert_chunks([
        DocumentChunk(
            id=chunk_id(file_id, "g1", i),
            content=text,
            file_id=file_id,
            chunk_index=i,
            metadata={"filename": "fallback.txt", "generation": "g1"},
            embedding=vector,
        )
        for i, (text, vector) in enumerate(zip(texts, vectors))
    ])


class TestDocumentSearch:

    @pytest.fixture
    def service(self, session_factory, embedding_service, chunk_store):
        return DocumentSearchService(session_factory, embedding_service, chunk_store, TermFrequencyReranker())

    @pytest.mark.asyncio
    async def test_verbatim_query_scores_top(self, service, make_file, embedding_service, chunk_store):
        asset = await make_file(b"unused", filename="pumps.txt")
        await _store_texts(chunk_store, embedding_service, asset.id, [
            "Bleed the hydraulic line before opening the pump housing.",
            "Compressor belts wear out after two thousand hours.",
        ])

        hits = await service.search("Bleed the hydraulic line before opening the pump housing.",
                                    threshold=0.5, limit=5)

        assert hits
        assert hits[0].chunk.chunk_index == 0
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-3)
        assert hits[0].filename == "pumps.txt"
        assert hits[0].combined_score >= hits[0].similarity

    @pytest.mark.asyncio
    async def test_threshold_filters_and_limit_caps(self, service, make_file, embedding_service, chunk_store):
        asset = await make_file(b"unused")
        await _store_texts(chunk_store, embedding_service, asset.id, [
            "alpha beta gamma", "alpha beta delta", "omega psi chi",
        ])

        hits = await service.search("alpha beta gamma", threshold=0.6, limit=1)

        assert len(hits) == 1
        assert all(h.similarity >= 0.6 for h in hits)

    @pytest.mark.asyncio
    async def test_file_filter(self, service, make_file, embedding_service, chunk_store):
        first = await make_file(b"unused", filename="a.txt")
        second = await make_file(b"unused", filename="b.txt")
        await _store_texts(chunk_store, embedding_service, first.id, ["gasket torque values"])
        await _store_texts(chunk_store, embedding_service, second.id, ["gasket torque values"])

        hits = await service.search("gasket torque values", threshold=0.5, limit=10, file_ids=[second.id])

        assert [h.chunk.file_id for h in hits] == [second.id]

    @pytest.mark.asyncio
    async def test_empty_store_returns_nothing(self, service):
        assert await service.search("anything at all", threshold=0.0, limit=5) == []

    @pytest.mark.asyncio
    async def test_blank_query_short_circuits(self, service, embedding_service):
        assert await service.search("   ") == []
        assert embedding_service.calls == []

    @pytest.mark.asyncio
    async def test_rate_limit_propagates(self, session_factory, chunk_store):
        service = DocumentSearchService(
            session_factory,
            FailingEmbeddingService(EmbeddingRateLimitError("slow down")),
            chunk_store,
            TermFrequencyReranker(),
        )

        with pytest.raises(EmbeddingRateLimitError):
            await service.search("pump manual")
