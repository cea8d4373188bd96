"""Document ingestion pipeline and query-time orchestration."""

from __future__ import annotations

import asyncio
import gc
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from thesisrag.config import AppConfig
from thesisrag.embedding.encoder import EmbeddingProvider, create_embedding_provider
from thesisrag.errors import DimensionMismatch, ProviderFailure, RAGError
from thesisrag.index.remote import RestVectorStore
from thesisrag.index.search import NO_RESULTS_MESSAGE, Searcher, format_context
from thesisrag.index.storage import SQLiteVectorStore, VectorStore
from thesisrag.ingestion.pdf_loader import process_pdf_document
from thesisrag.models import BatchStats, ProcessingStatus, RAGStats, SearchResult

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class RAGService:
    """Coordinates extraction, chunking, embedding, persistence and retrieval."""

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        config: AppConfig | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store
        self.embedder = embedder
        self.searcher = Searcher(
            store,
            similarity_threshold=self.config.similarity_threshold,
            semantic_weight=self.config.hybrid_semantic_weight,
            keyword_weight=self.config.hybrid_keyword_weight,
        )
        self.statuses: Dict[str, ProcessingStatus] = {}

    @property
    def mode(self) -> str:
        return self.embedder.mode

    async def aclose(self) -> None:
        await self.store.aclose()

    async def process_new_document(self, document_id: str) -> int:
        """Ingest one document end to end and return the number of stored chunks.

        Nothing is written unless every stage succeeds. On failure the
        document is marked FAILED and the error is re-raised.
        """
        self.statuses[document_id] = ProcessingStatus.PROCESSING
        LOGGER.info("Starting RAG processing for document: %s", document_id)
        try:
            document = await self.store.get_document(document_id)
            url = await self.store.create_signed_url(
                document.file_path, expires_in=self.config.signed_url_ttl
            )
            data = await self.store.download(url)

            chunks = await asyncio.to_thread(
                process_pdf_document,
                data,
                document,
                chunk_size=self.config.chunk_size,
                overlap=self.config.chunk_overlap,
                min_text_chars=self.config.min_text_chars,
                min_paragraph_chars=self.config.min_paragraph_chars,
            )

            LOGGER.info("Generating embeddings for %d chunks", len(chunks))
            embeddings = await self.embedder.generate_batch_embeddings([c.text for c in chunks])
            if len(embeddings) != len(chunks):
                raise ProviderFailure(
                    f"Expected {len(chunks)} embeddings, provider returned {len(embeddings)}"
                )
            for chunk, embedding in zip(chunks, embeddings):
                chunk.embedding = embedding

            if await self.store.count_chunks(document_id):
                LOGGER.info("Replacing existing chunks of document %s", document_id)
                await self.store.replace_chunks(document_id, chunks)
            else:
                await self.store.insert_chunks(chunks)
        except Exception as exc:
            self.statuses[document_id] = ProcessingStatus.FAILED
            LOGGER.error("Error processing document %s: %s", document_id, exc)
            raise

        self.statuses[document_id] = ProcessingStatus.PROCESSED
        LOGGER.info("Successfully processed document: %s (%d chunks)", document.title, len(chunks))
        return len(chunks)

    async def process_all_documents(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        *,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> BatchStats:
        """Ingest every document that has no chunks yet, one at a time.

        A failing document is logged and skipped; ``progress_callback`` is
        called with ``(current, total)`` after every attempt, successful or
        not. Only a failure to enumerate the documents aborts the batch.
        """
        documents = await self.store.list_documents()
        processed = await self.store.list_processed_document_ids()
        pending = [document for document in documents if document.id not in processed]

        stats = BatchStats(total=len(pending))
        if not pending:
            LOGGER.info("No documents to process")
            return stats

        LOGGER.info("Processing %d documents...", len(pending))
        for document in pending:
            self.statuses.setdefault(document.id, ProcessingStatus.UNPROCESSED)

        for position, document in enumerate(pending, 1):
            if should_cancel is not None and should_cancel():
                LOGGER.warning("Batch cancelled after %d of %d documents", position - 1, stats.total)
                stats.cancelled = True
                break

            try:
                await self.process_new_document(document.id)
                stats.record(document.id, ok=True)
            except Exception as exc:
                LOGGER.error("Failed to process document %s: %s", document.title, exc)
                stats.record(document.id, ok=False)

            if progress_callback is not None:
                progress_callback(position, stats.total)

            if position % max(self.config.batch_size, 1) == 0:
                LOGGER.info("Progress: %d/%d documents", position, stats.total)
                gc.collect()

        LOGGER.info(
            "Batch processing complete: %d processed, %d failed",
            stats.processed,
            stats.failed,
        )
        return stats

    async def search(
        self, query: str, *, max_chunks: Optional[int] = None, use_hybrid_search: bool = True
    ) -> List[SearchResult]:
        """Embed ``query`` and return ranked results."""
        limit = self.config.search_limit if max_chunks is None else max_chunks
        if limit <= 0:
            return []
        query_embedding = await self.embedder.generate_embedding(query)
        if use_hybrid_search:
            return await self.searcher.hybrid_search(query, query_embedding, limit=limit)
        return await self.searcher.semantic_search(query_embedding, limit=limit)

    async def search_and_generate_context(
        self,
        query: str,
        *,
        max_chunks: Optional[int] = None,
        use_hybrid_search: bool = True,
    ) -> str:
        """Build the LLM context block for ``query``.

        Provider and store failures degrade to the no-results message;
        dimension mismatches are programming errors and propagate.
        """
        if not query or not query.strip():
            return NO_RESULTS_MESSAGE
        try:
            results = await self.search(
                query, max_chunks=max_chunks, use_hybrid_search=use_hybrid_search
            )
        except DimensionMismatch:
            raise
        except RAGError as exc:
            LOGGER.error("Error in search and generate context: %s", exc)
            return NO_RESULTS_MESSAGE
        return format_context(results)

    async def find_similar_documents(self, document_id: str, *, limit: int = 5) -> List[SearchResult]:
        return await self.searcher.find_similar_documents(document_id, limit=limit)

    async def is_document_processed(self, document_id: str) -> bool:
        try:
            return await self.store.count_chunks(document_id) > 0
        except RAGError as exc:
            LOGGER.error("Error checking document status: %s", exc)
            return False

    async def get_document_status(self, document_id: str) -> ProcessingStatus:
        status = self.statuses.get(document_id)
        if status is not None:
            return status
        if await self.is_document_processed(document_id):
            return ProcessingStatus.PROCESSED
        return ProcessingStatus.UNPROCESSED

    async def delete_document_chunks(self, document_id: str) -> None:
        """Remove a document's chunks so it can be processed again."""
        await self.store.delete_chunks(document_id)
        self.statuses[document_id] = ProcessingStatus.UNPROCESSED

    async def get_rag_stats(self) -> RAGStats:
        try:
            total_documents = await self.store.count_documents()
            total_chunks = await self.store.count_chunks()
            processed = len(await self.store.list_processed_document_ids())
        except RAGError as exc:
            LOGGER.error("Error getting RAG stats: %s", exc)
            return RAGStats()

        return RAGStats(
            total_documents=total_documents,
            processed_documents=processed,
            total_chunks=total_chunks,
            average_chunks_per_document=round(total_chunks / processed) if processed else 0,
        )


def create_store(config: AppConfig) -> VectorStore:
    """Remote store when BaaS credentials are configured, local SQLite otherwise."""
    if config.uses_remote_store:
        return RestVectorStore(
            config.supabase_url,  # type: ignore[arg-type]
            config.supabase_key,  # type: ignore[arg-type]
            bucket=config.storage_bucket,
            text_search_config=config.text_search_config,
            timeout=config.request_timeout,
        )
    db_path = config.resolve_db_path(Path.cwd())
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return SQLiteVectorStore(db_path)


def create_rag_service(config: AppConfig | None = None) -> RAGService:
    config = config or AppConfig.from_env()
    embedder = create_embedding_provider(
        config.embedding_provider,
        api_key=config.api_key,
        model_name=config.model_name,
        timeout=config.request_timeout,
    )
    return RAGService(create_store(config), embedder, config)


_service_instance: Optional[RAGService] = None


def get_rag_service(config: AppConfig | None = None) -> RAGService:
    """Return the process-wide service, building it on first use."""
    global _service_instance
    if _service_instance is None:
        _service_instance = create_rag_service(config)
    return _service_instance


def reset_rag_service() -> None:
    """Forget the process-wide service (tests build a fresh one afterwards)."""
    global _service_instance
    _service_instance = None
