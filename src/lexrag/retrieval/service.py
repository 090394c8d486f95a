"""Vector index adapters used by the query pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

LOGGER = logging.getLogger(__name__)

_SCALARS = (str, int, float, bool)


class VectorIndexError(RuntimeError):
    """Raised when the vector index cannot be queried."""


@dataclass(frozen=True)
class SearchHit:
    id: str
    score: float
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResponse:
    results: Sequence[SearchHit] = ()


@dataclass(frozen=True)
class IndexRecord:
    """Passage text, vector and attributes to store in the index."""

    id: str
    content: str
    vector: Sequence[float]
    payload: Mapping[str, Any] = field(default_factory=dict)


class VectorIndex(Protocol):
    """Protocol for nearest-neighbour search over legal passages."""

    async def collection_exists(self) -> bool:
        """Return whether the backing collection is present."""

    async def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        """Return hits ordered by descending score."""


def build_where(filter: Mapping[str, Any] | None) -> Dict[str, Any] | None:
    """Translate an attribute filter into a Chroma ``where`` clause.

    Scalars match exactly, sequences match any member, and keys ending in
    ``_min`` / ``_max`` become inclusive range bounds on the stripped key.
    """

    if not filter:
        return None
    clauses: list[Dict[str, Any]] = []
    for key in sorted(filter):
        value = filter[key]
        if value is None:
            continue
        if key.endswith("_min"):
            clauses.append({key[:-4]: {"$gte": value}})
        elif key.endswith("_max"):
            clauses.append({key[:-4]: {"$lte": value}})
        elif isinstance(value, (list, tuple, set, frozenset)):
            members = sorted(value, key=str)
            if members:
                clauses.append({key: {"$in": members}})
        else:
            clauses.append({key: value})
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorIndex:
    """Vector index backed by a Chroma collection with cosine distance."""

    def __init__(
        self,
        collection_name: str = "lexrag",
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._collection_name = collection_name
        self._collection = None

    @property
    def collection_name(self) -> str:
        return self._collection_name

    async def collection_exists(self) -> bool:
        try:
            collections = await asyncio.to_thread(self._client.list_collections)
        except Exception as exc:
            raise VectorIndexError(f"Failed to list collections: {exc}") from exc
        names = {getattr(collection, "name", collection) for collection in collections}
        return self._collection_name in names

    def create_collection(self):
        if self._collection is None:
            self._collection = self._client.get_or_create_collection(
                name=self._collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        return self._collection

    async def upsert(self, records: Sequence[IndexRecord]) -> Sequence[str]:
        if not records:
            return []
        collection = await asyncio.to_thread(self.create_collection)
        ids = [record.id for record in records]
        await asyncio.to_thread(
            collection.upsert,
            ids=ids,
            documents=[record.content for record in records],
            embeddings=[[float(value) for value in record.vector] for record in records],
            metadatas=[self._serialize_payload(record.payload) for record in records],
        )
        LOGGER.info("Upserted %d passages into %s", len(ids), self._collection_name)
        return ids

    async def count(self) -> int:
        collection = await asyncio.to_thread(self.create_collection)
        return int(await asyncio.to_thread(collection.count))

    async def search(
        self,
        vector: Sequence[float],
        *,
        limit: int,
        score_threshold: float | None = None,
        filter: Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        if limit <= 0:
            return SearchResponse(results=())
        try:
            collection = await asyncio.to_thread(self.create_collection)
            results = await asyncio.to_thread(
                collection.query,
                query_embeddings=[[float(value) for value in vector]],
                n_results=limit,
                where=build_where(filter),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise VectorIndexError(f"Search against {self._collection_name} failed: {exc}") from exc
        hits = self._deserialize_results(results)
        if score_threshold is not None:
            hits = [hit for hit in hits if hit.score >= score_threshold]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return SearchResponse(results=tuple(hits))

    def _deserialize_results(self, results: Mapping[str, object]) -> list[SearchHit]:
        ids = self._first(results.get("ids"))
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        hits: list[SearchHit] = []
        for position, hit_id in enumerate(ids):
            document = documents[position] if position < len(documents) else ""
            metadata = metadatas[position] if position < len(metadatas) else None
            distance = distances[position] if position < len(distances) else None
            payload = self._deserialize_payload(metadata)
            payload["content"] = document or ""
            score = 1.0 - float(distance) if distance is not None else 0.0
            hits.append(SearchHit(id=str(hit_id), score=score, payload=payload))
        return hits

    @staticmethod
    def _serialize_payload(payload: Mapping[str, Any]) -> MutableMapping[str, object]:
        metadata: MutableMapping[str, object] = {}
        for key, value in payload.items():
            if value is None or key == "content":
                continue
            if isinstance(value, _SCALARS):
                metadata[key] = value
            else:
                metadata[key] = json.dumps(value, ensure_ascii=False, default=str)
        return metadata

    @staticmethod
    def _deserialize_payload(metadata: object) -> Dict[str, Any]:
        if isinstance(metadata, Mapping):
            return dict(metadata)
        return {}

    @staticmethod
    def _first(value: object) -> list:
        if isinstance(value, list) and value:
            first: Iterable = value[0] or []
            return list(first)
        return []
