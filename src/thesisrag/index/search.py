"""Semantic, keyword and hybrid retrieval over stored chunks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from thesisrag.embedding.encoder import centroid, cosine_similarity
from thesisrag.errors import DimensionMismatch, NotFound, RAGError
from thesisrag.index.storage import VectorStore
from thesisrag.models import ChunkRecord, SearchResult

LOGGER = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "No relevant documents found for this query."
CONTEXT_ERROR_MESSAGE = "Error while retrieving context from the document base."

HYBRID_SEMANTIC_THRESHOLD = 0.5
SIMILAR_DOCUMENTS_THRESHOLD = 0.6
SIMILAR_DOCUMENTS_OVERFETCH = 4


def _rank_score(position: int, total: int, weight: float) -> float:
    """Linear decay from ``weight`` for the first hit towards 0 for the last."""
    return (1 - position / total) * weight


class Searcher:
    """High-level API to query the vector store."""

    def __init__(
        self,
        store: VectorStore,
        *,
        similarity_threshold: float = 0.7,
        semantic_weight: float = 0.7,
        keyword_weight: float = 0.3,
    ) -> None:
        self.store = store
        self.similarity_threshold = similarity_threshold
        self.semantic_weight = semantic_weight
        self.keyword_weight = keyword_weight

    async def semantic_search(
        self,
        query_embedding: Sequence[float],
        *,
        limit: int = 10,
        threshold: Optional[float] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        """Rank chunks by vector similarity and attach their document's metadata."""
        rows = await self.store.match_chunks(
            query_embedding,
            threshold=self.similarity_threshold if threshold is None else threshold,
            limit=limit,
            document_ids=document_ids,
        )

        metadata_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        results: List[SearchResult] = []
        for row in rows:
            document_id = row["document_id"]
            if document_id not in metadata_cache:
                metadata_cache[document_id] = await self._document_metadata(document_id)
            results.append(
                SearchResult(
                    document_id=document_id,
                    chunk_id=row["id"],
                    content=row["content"],
                    page_number=row["page_number"],
                    similarity=row["similarity"],
                    metadata=metadata_cache[document_id],
                )
            )
        return results

    async def _document_metadata(self, document_id: str) -> Optional[Dict[str, Any]]:
        try:
            document = await self.store.get_document(document_id)
        except NotFound:
            LOGGER.warning("Chunk references missing document %s", document_id)
            return None
        return document.display_metadata()

    async def hybrid_search(
        self,
        query: str,
        query_embedding: Sequence[float],
        *,
        limit: int = 10,
        semantic_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
    ) -> List[SearchResult]:
        """Blend vector and full-text rankings.

        Each list contributes a rank-decayed, weighted score. A chunk found
        by both searches receives the sum of both contributions, so scores
        can exceed the weight of either signal alone.
        """
        semantic_weight = self.semantic_weight if semantic_weight is None else semantic_weight
        keyword_weight = self.keyword_weight if keyword_weight is None else keyword_weight

        semantic_results, keyword_rows = await asyncio.gather(
            self.semantic_search(
                query_embedding, limit=limit * 2, threshold=HYBRID_SEMANTIC_THRESHOLD
            ),
            self.store.text_search(query, limit=limit * 2),
        )

        combined: Dict[str, SearchResult] = {}
        for position, result in enumerate(semantic_results):
            score = _rank_score(position, len(semantic_results), semantic_weight)
            combined[result.chunk_id] = replace(result, similarity=score)

        for position, row in enumerate(keyword_rows):
            score = _rank_score(position, len(keyword_rows), keyword_weight)
            existing = combined.get(row["id"])
            if existing is not None:
                existing.similarity += score
                continue
            combined[row["id"]] = SearchResult(
                document_id=row["document_id"],
                chunk_id=row["id"],
                content=row["content"],
                page_number=row["page_number"],
                similarity=score,
                metadata=dict(row.get("document") or {}) or None,
            )

        ranked = sorted(combined.values(), key=lambda result: result.similarity, reverse=True)
        LOGGER.debug(
            "Hybrid search: %d semantic, %d keyword, %d merged",
            len(semantic_results),
            len(keyword_rows),
            len(combined),
        )
        return ranked[:limit]

    async def find_similar_documents(
        self,
        document_id: str,
        *,
        limit: int = 5,
        threshold: float = SIMILAR_DOCUMENTS_THRESHOLD,
    ) -> List[SearchResult]:
        """Best-matching chunk of each other document, closest to this document's centroid."""
        embeddings = await self.store.get_chunk_embeddings(document_id)
        if not embeddings:
            return []

        results = await self.semantic_search(
            centroid(embeddings),
            limit=(limit + 1) * SIMILAR_DOCUMENTS_OVERFETCH,
            threshold=threshold,
        )

        per_document: Dict[str, SearchResult] = {}
        for result in results:
            if result.document_id == document_id:
                continue
            per_document.setdefault(result.document_id, result)
        return list(per_document.values())[:limit]

    async def retrieve_context_for_query(
        self,
        query_embedding: Sequence[float],
        *,
        max_chunks: int = 5,
        threshold: float = 0.65,
    ) -> str:
        """Semantic-only context block; store failures yield an error notice instead of raising."""
        try:
            results = await self.semantic_search(
                query_embedding, limit=max_chunks, threshold=threshold
            )
        except DimensionMismatch:
            raise
        except RAGError as exc:
            LOGGER.error("Error retrieving context: %s", exc)
            return CONTEXT_ERROR_MESSAGE
        return format_context(results, excerpt_chars=None)


def local_semantic_search(
    query_embedding: Sequence[float],
    chunks: Sequence[ChunkRecord],
    limit: int = 5,
) -> List[SearchResult]:
    """Rank already-loaded chunks by cosine similarity, without any I/O."""
    scored: List[SearchResult] = []
    for chunk in chunks:
        if chunk.embedding is None:
            raise ValueError(f"Chunk {chunk.index} of {chunk.document_id} has no embedding")
        scored.append(
            SearchResult(
                document_id=chunk.document_id,
                chunk_id=chunk.id or f"{chunk.document_id}:{chunk.index}",
                content=chunk.text,
                page_number=chunk.page_number,
                similarity=cosine_similarity(query_embedding, chunk.embedding),
            )
        )
    scored.sort(key=lambda result: result.similarity, reverse=True)
    return scored[:limit]


def format_context(results: Sequence[SearchResult], *, excerpt_chars: Optional[int] = 300) -> str:
    """Render results as a numbered source list for an LLM prompt."""
    if not results:
        return NO_RESULTS_MESSAGE

    parts = ["Relevant documents found:\n"]
    for number, result in enumerate(results, 1):
        metadata = result.metadata or {}
        content = result.content
        if excerpt_chars is not None and len(content) > excerpt_chars:
            content = content[:excerpt_chars].rstrip() + "..."
        year = metadata.get("year")
        parts.append(
            f"**[{number}] {metadata.get('title') or 'Untitled'}**\n"
            f"Author: {metadata.get('author') or 'Unknown'}"
            f"{f' ({year})' if year else ''}\n"
            f"Domain: {metadata.get('domain') or 'Unspecified'}\n"
            f"Page {result.page_number} - Score: {result.similarity * 100:.1f}%\n\n"
            f"> {content}\n\n"
            "---\n"
        )
    return "\n".join(parts)
