"""Tests for the REST store adapter against a mocked backend."""

from __future__ import annotations

import json
from typing import Callable, List

import httpx
import pytest

from thesisrag.errors import NotFound, PersistenceFailure
from thesisrag.index.remote import RestVectorStore
from thesisrag.models import ChunkRecord

BASE_URL = "https://project.supabase.co"


def _store(handler: Callable[[httpx.Request], httpx.Response], requests: List[httpx.Request]):
    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return RestVectorStore(BASE_URL, "service-key", client=client)


class TestRequests:
    """Headers, error mapping and counting."""

    @pytest.mark.asyncio
    async def test_auth_headers(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(lambda r: httpx.Response(200, json=[{"id": 1, "title": "T"}]), requests)

        document = await store.get_document("1")

        assert document.id == "1"
        assert requests[0].headers["apikey"] == "service-key"
        assert requests[0].headers["authorization"] == "Bearer service-key"
        assert requests[0].url.params["id"] == "eq.1"

    @pytest.mark.asyncio
    async def test_document_not_found(self) -> None:
        store = _store(lambda r: httpx.Response(200, json=[]), [])
        with pytest.raises(NotFound):
            await store.get_document("nope")

    @pytest.mark.asyncio
    async def test_error_status(self) -> None:
        store = _store(
            lambda r: httpx.Response(500, json={"message": "relation does not exist"}), []
        )
        with pytest.raises(PersistenceFailure, match="relation does not exist") as info:
            await store.count_documents()
        assert info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_count_reads_content_range(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(
            lambda r: httpx.Response(200, json=[], headers={"content-range": "0-0/42"}), requests
        )

        assert await store.count_chunks("d1") == 42
        assert requests[0].headers["prefer"] == "count=exact"
        assert requests[0].url.params["document_id"] == "eq.d1"

    @pytest.mark.asyncio
    async def test_count_without_range(self) -> None:
        store = _store(lambda r: httpx.Response(200, json=[], headers={"content-range": "*/*"}), [])
        assert await store.count_documents() == 0

    @pytest.mark.asyncio
    async def test_processed_ids_paginate(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("thesisrag.index.remote.PAGE_SIZE", 2)
        pages = {"0": [{"document_id": "a"}, {"document_id": "a"}], "2": [{"document_id": "b"}]}
        requests: List[httpx.Request] = []
        store = _store(lambda r: httpx.Response(200, json=pages[r.url.params["offset"]]), requests)

        assert await store.list_processed_document_ids() == {"a", "b"}
        assert len(requests) == 2


class TestStorage:
    @pytest.mark.asyncio
    async def test_signed_url_relative(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(
            lambda r: httpx.Response(200, json={"signedURL": "/object/sign/documents/a.pdf?token=t"}),
            requests,
        )

        url = await store.create_signed_url("a.pdf", expires_in=60)

        assert url == f"{BASE_URL}/storage/v1/object/sign/documents/a.pdf?token=t"
        assert requests[0].url.path == "/storage/v1/object/sign/documents/a.pdf"
        assert json.loads(requests[0].content) == {"expiresIn": 60}

    @pytest.mark.asyncio
    async def test_signed_url_missing(self) -> None:
        store = _store(lambda r: httpx.Response(200, json={}), [])
        with pytest.raises(PersistenceFailure, match="Failed to get document URL"):
            await store.create_signed_url("a.pdf")

    @pytest.mark.asyncio
    async def test_download(self) -> None:
        store = _store(lambda r: httpx.Response(200, content=b"%PDF"), [])
        assert await store.download(f"{BASE_URL}/file") == b"%PDF"

    @pytest.mark.asyncio
    async def test_download_failure(self) -> None:
        store = _store(lambda r: httpx.Response(404), [])
        with pytest.raises(PersistenceFailure, match="Failed to fetch PDF"):
            await store.download(f"{BASE_URL}/file")


class TestChunks:
    """Chunk insertion, vector RPC and full-text search."""

    @pytest.mark.asyncio
    async def test_insert_chunks_row_shape(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(lambda r: httpx.Response(201), requests)

        await store.insert_chunks(
            [ChunkRecord(document_id="d1", index=0, page_number=4, text="t", embedding=[0.5])]
        )

        assert json.loads(requests[0].content) == [
            {
                "document_id": "d1",
                "chunk_index": 0,
                "content": "t",
                "embedding": "[0.5]",
                "metadata": {"page_number": 4},
            }
        ]

    @pytest.mark.asyncio
    async def test_insert_nothing(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(lambda r: httpx.Response(201), requests)
        await store.insert_chunks([])
        assert requests == []

    @pytest.mark.asyncio
    async def test_replace_chunks_inserts_before_deleting(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=[{"id": 3}, {"id": 4}])
            return httpx.Response(201 if request.method == "POST" else 204)

        store = _store(handler, requests)

        await store.replace_chunks(
            "d1", [ChunkRecord(document_id="d1", index=0, page_number=1, text="t", embedding=[0.5])]
        )

        assert [r.method for r in requests] == ["GET", "POST", "DELETE"]
        assert requests[0].url.params["document_id"] == "eq.d1"
        assert requests[2].url.params["id"] == "in.(3,4)"

    @pytest.mark.asyncio
    async def test_replace_chunks_keeps_old_rows_when_insert_fails(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=[{"id": 3}])
            return httpx.Response(500, json={"message": "insert failed"})

        store = _store(handler, requests)

        with pytest.raises(PersistenceFailure, match="insert failed"):
            await store.replace_chunks(
                "d1",
                [ChunkRecord(document_id="d1", index=0, page_number=1, text="t", embedding=[0.5])],
            )

        assert "DELETE" not in [r.method for r in requests]

    @pytest.mark.asyncio
    async def test_match_chunks(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(
            lambda r: httpx.Response(
                200,
                json=[
                    {
                        "id": 7,
                        "document_id": "d1",
                        "content": "c",
                        "metadata": {"page_number": 3},
                        "similarity": 0.91,
                    }
                ],
            ),
            requests,
        )

        rows = await store.match_chunks([1.0, 0.0], threshold=0.7, limit=5)

        assert rows == [
            {"id": "7", "document_id": "d1", "content": "c", "page_number": 3, "similarity": 0.91}
        ]
        assert requests[0].url.path == "/rest/v1/rpc/match_document_chunks"
        assert json.loads(requests[0].content) == {
            "query_embedding": "[1.0,0.0]",
            "match_threshold": 0.7,
            "match_count": 5,
        }

    @pytest.mark.asyncio
    async def test_text_search(self) -> None:
        requests: List[httpx.Request] = []
        store = _store(
            lambda r: httpx.Response(
                200,
                json=[
                    {
                        "id": 9,
                        "document_id": "d2",
                        "content": "réseaux",
                        "metadata": {},
                        "documents": {"title": "T", "author": "A", "year": 2019, "domain": "D"},
                    }
                ],
            ),
            requests,
        )

        rows = await store.text_search("réseaux de neurones", limit=4)

        assert rows[0]["page_number"] == 1
        assert rows[0]["document"]["title"] == "T"
        assert requests[0].url.params["content"] == "wfts(french).réseaux de neurones"
        assert requests[0].url.params["limit"] == "4"

    @pytest.mark.asyncio
    async def test_chunk_embeddings_and_delete(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                return httpx.Response(204)
            return httpx.Response(200, json=[{"embedding": "[1.0,2.0]"}, {"embedding": [3, 4]}])

        store = _store(handler, requests)

        assert await store.get_chunk_embeddings("d1") == [[1.0, 2.0], [3.0, 4.0]]
        await store.delete_chunks("d1")

        assert requests[-1].method == "DELETE"
        assert requests[-1].url.params["document_id"] == "eq.d1"
