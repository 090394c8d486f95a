from __future__ import annotations

import uuid

import chromadb
import pytest

from lexrag.embeddings.service import EmbeddingConfig, HashEmbedder
from lexrag.retrieval.service import ChromaVectorIndex, IndexRecord, build_where


def _index() -> ChromaVectorIndex:
    return ChromaVectorIndex(f"test-{uuid.uuid4().hex[:8]}", client=chromadb.EphemeralClient())


def _records(embedder: HashEmbedder) -> list[IndexRecord]:
    texts = {
        "c1": ("law-1", 1990, "תקופת ההתיישנות היא שבע שנים"),
        "c2": ("law-2", 2005, "חוזה בעל פה תקף"),
        "c3": ("law-3", 2015, "זכויות עובדים בשעות נוספות"),
    }
    return [
        IndexRecord(
            id=chunk_id,
            content=text,
            vector=embedder.vector_for(text),
            payload={"source_id": source_id, "year": year, "section_number": "5", "tags": ["civil"]},
        )
        for chunk_id, (source_id, year, text) in texts.items()
    ]


def test_build_where_translation():
    assert build_where(None) is None
    assert build_where({"law_id": None}) is None
    assert build_where({"law_id": "x"}) == {"law_id": "x"}
    assert build_where({"law_id": ["b", "a"]}) == {"law_id": {"$in": ["a", "b"]}}
    assert build_where({"year_min": 1990, "year_max": 2000}) == {
        "$and": [{"year": {"$lte": 2000}}, {"year": {"$gte": 1990}}]
    }


@pytest.mark.asyncio
async def test_collection_exists_after_upsert():
    embedder = HashEmbedder(EmbeddingConfig(dim=16))
    index = _index()
    assert await index.collection_exists() is False
    ids = await index.upsert(_records(embedder))
    assert list(ids) == ["c1", "c2", "c3"]
    assert await index.collection_exists() is True
    assert await index.count() == 3


@pytest.mark.asyncio
async def test_search_returns_scored_payloads():
    embedder = HashEmbedder(EmbeddingConfig(dim=16))
    index = _index()
    records = _records(embedder)
    await index.upsert(records)
    response = await index.search(records[0].vector, limit=3)
    assert response.results[0].id == "c1"
    assert response.results[0].score == pytest.approx(1.0, abs=1e-3)
    scores = [hit.score for hit in response.results]
    assert scores == sorted(scores, reverse=True)
    payload = response.results[0].payload
    assert payload["content"] == records[0].content
    assert payload["source_id"] == "law-1"
    assert payload["tags"] == '["civil"]'


@pytest.mark.asyncio
async def test_search_applies_threshold_and_filter():
    embedder = HashEmbedder(EmbeddingConfig(dim=16))
    index = _index()
    records = _records(embedder)
    await index.upsert(records)
    filtered = await index.search(records[0].vector, limit=3, filter={"source_id": "law-2"})
    assert [hit.id for hit in filtered.results] == ["c2"]
    ranged = await index.search(records[0].vector, limit=3, filter={"year_min": 2000})
    assert {hit.id for hit in ranged.results} == {"c2", "c3"}
    strict = await index.search(records[0].vector, limit=3, score_threshold=0.999)
    assert [hit.id for hit in strict.results] == ["c1"]


@pytest.mark.asyncio
async def test_search_with_zero_limit():
    index = _index()
    response = await index.search([0.0] * 16, limit=0)
    assert response.results == ()
