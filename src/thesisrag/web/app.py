"""FastAPI admin API over the RAG service."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from thesisrag import __version__
from thesisrag.config import AppConfig
from thesisrag.errors import NotFound, RAGError
from thesisrag.index.indexer import RAGService, get_rag_service, reset_rag_service
from thesisrag.models import SearchResult

LOGGER = logging.getLogger(__name__)

MAX_RESULTS = 50

app = FastAPI(title="ThesisRAG Admin", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_config: AppConfig | None = None


class SearchPayload(BaseModel):
    query: str
    max_chunks: int = 5
    hybrid: bool = True
    with_context: bool = False


def configure(config: AppConfig | None) -> None:
    """Use ``config`` for the service built on the next request."""
    global _config
    _config = config
    reset_rag_service()


def _service() -> RAGService:
    return get_rag_service(_config)


def _result_payload(result: SearchResult) -> dict[str, Any]:
    return asdict(result)


def _http_error(exc: RAGError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "embedding_mode": _service().mode}


@app.post("/search")
async def search_documents(payload: SearchPayload) -> dict[str, Any]:
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Empty query")

    max_chunks = max(1, min(payload.max_chunks, MAX_RESULTS))
    service = _service()
    try:
        results = await service.search(
            query, max_chunks=max_chunks, use_hybrid_search=payload.hybrid
        )
    except RAGError as exc:
        LOGGER.error("Search failed: %s", exc)
        raise _http_error(exc) from exc

    response: dict[str, Any] = {"results": [_result_payload(result) for result in results]}
    if payload.with_context:
        response["context"] = await service.search_and_generate_context(
            query, max_chunks=max_chunks, use_hybrid_search=payload.hybrid
        )
    return response


@app.post("/documents/process-all")
async def process_all_documents() -> dict[str, Any]:
    try:
        stats = await _service().process_all_documents()
    except RAGError as exc:
        LOGGER.error("Batch processing failed: %s", exc)
        raise _http_error(exc) from exc
    return {"status": "ok", "stats": asdict(stats)}


@app.post("/documents/{document_id}/process")
async def process_document(document_id: str) -> dict[str, Any]:
    try:
        chunks = await _service().process_new_document(document_id)
    except RAGError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok", "document_id": document_id, "chunks": chunks}


@app.get("/documents/{document_id}/status")
async def document_status(document_id: str) -> dict[str, str]:
    status = await _service().get_document_status(document_id)
    return {"document_id": document_id, "status": status.value}


@app.delete("/documents/{document_id}/chunks")
async def delete_document_chunks(document_id: str) -> dict[str, str]:
    try:
        await _service().delete_document_chunks(document_id)
    except RAGError as exc:
        raise _http_error(exc) from exc
    return {"status": "ok", "document_id": document_id}


@app.get("/documents/{document_id}/similar")
async def similar_documents(document_id: str, limit: int = 5) -> dict[str, List[dict[str, Any]]]:
    limit = max(1, min(limit, MAX_RESULTS))
    try:
        results = await _service().find_similar_documents(document_id, limit=limit)
    except RAGError as exc:
        raise _http_error(exc) from exc
    return {"results": [_result_payload(result) for result in results]}


@app.get("/stats")
async def stats() -> dict[str, int]:
    return asdict(await _service().get_rag_stats())
