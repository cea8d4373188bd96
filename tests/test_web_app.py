"""Tests for the FastAPI admin API."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from thesisrag.config import AppConfig
from thesisrag.errors import ExtractionFailure, NotFound, PersistenceFailure
from thesisrag.models import BatchStats, ProcessingStatus, RAGStats, SearchResult
from thesisrag.web import app as web_module
from thesisrag.web.app import app, configure

client = TestClient(app)


def _result(chunk_id: str = "c1") -> SearchResult:
    return SearchResult(
        document_id="d1",
        chunk_id=chunk_id,
        content="text",
        page_number=2,
        similarity=0.8,
        metadata={"title": "T"},
    )


@pytest.fixture
def service():
    mock = MagicMock()
    mock.mode = "mock"
    with patch("thesisrag.web.app.get_rag_service", return_value=mock):
        yield mock


class TestHealth:
    def test_reports_mode(self, service: MagicMock) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "embedding_mode": "mock"}


class TestSearchEndpoint:
    """Tests for POST /search."""

    def test_empty_query(self, service: MagicMock) -> None:
        response = client.post("/search", json={"query": "   "})
        assert response.status_code == 400
        assert "Empty query" in response.json()["detail"]

    def test_results(self, service: MagicMock) -> None:
        service.search = AsyncMock(return_value=[_result()])

        response = client.post("/search", json={"query": "neural", "max_chunks": 500, "hybrid": False})

        assert response.status_code == 200
        body = response.json()
        assert body["results"][0]["chunk_id"] == "c1"
        assert body["results"][0]["metadata"] == {"title": "T"}
        assert "context" not in body
        service.search.assert_awaited_once_with("neural", max_chunks=50, use_hybrid_search=False)

    def test_with_context(self, service: MagicMock) -> None:
        service.search = AsyncMock(return_value=[])
        service.search_and_generate_context = AsyncMock(return_value="No relevant documents")

        response = client.post("/search", json={"query": "q", "with_context": True})

        assert response.json()["context"] == "No relevant documents"

    def test_store_failure(self, service: MagicMock) -> None:
        service.search = AsyncMock(side_effect=PersistenceFailure("store down"))

        response = client.post("/search", json={"query": "q"})

        assert response.status_code == 500
        assert "store down" in response.json()["detail"]


class TestDocumentEndpoints:
    def test_process(self, service: MagicMock) -> None:
        service.process_new_document = AsyncMock(return_value=12)

        response = client.post("/documents/d1/process")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "document_id": "d1", "chunks": 12}

    def test_process_missing(self, service: MagicMock) -> None:
        service.process_new_document = AsyncMock(side_effect=NotFound("Document not found: d9"))

        response = client.post("/documents/d9/process")

        assert response.status_code == 404

    def test_process_failure(self, service: MagicMock) -> None:
        service.process_new_document = AsyncMock(side_effect=ExtractionFailure("corrupt"))

        response = client.post("/documents/d1/process")

        assert response.status_code == 500
        assert response.json()["detail"] == "corrupt"

    def test_process_all(self, service: MagicMock) -> None:
        service.process_all_documents = AsyncMock(
            return_value=BatchStats(total=3, processed=2, failed=1, failed_ids=["d2"])
        )

        response = client.post("/documents/process-all")

        assert response.status_code == 200
        assert response.json()["stats"]["failed_ids"] == ["d2"]

    def test_status(self, service: MagicMock) -> None:
        service.get_document_status = AsyncMock(return_value=ProcessingStatus.PROCESSED)

        response = client.get("/documents/d1/status")

        assert response.json() == {"document_id": "d1", "status": "processed"}

    def test_delete_chunks(self, service: MagicMock) -> None:
        service.delete_document_chunks = AsyncMock()

        response = client.delete("/documents/d1/chunks")

        assert response.status_code == 200
        service.delete_document_chunks.assert_awaited_once_with("d1")

    def test_similar(self, service: MagicMock) -> None:
        service.find_similar_documents = AsyncMock(return_value=[_result("c7")])

        response = client.get("/documents/d1/similar", params={"limit": 3})

        assert response.json()["results"][0]["chunk_id"] == "c7"
        service.find_similar_documents.assert_awaited_once_with("d1", limit=3)


def test_stats(service: MagicMock) -> None:
    service.get_rag_stats = AsyncMock(return_value=RAGStats(5, 2, 20, 10))

    response = client.get("/stats")

    assert response.json() == {
        "total_documents": 5,
        "processed_documents": 2,
        "total_chunks": 20,
        "average_chunks_per_document": 10,
    }


def test_configure_resets_service(tmp_path: Path) -> None:
    config = AppConfig(db_path=tmp_path / "rag.db")
    configure(config)
    try:
        service = web_module._service()
        assert service.config is config
        assert web_module._service() is service
        service.store.close()
    finally:
        configure(None)
