"""HTTP adapter for a Supabase-style backend (PostgREST tables + storage API)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Set
from urllib.parse import quote

import httpx

from thesisrag.errors import NotFound, PersistenceFailure
from thesisrag.index.storage import chunk_row, decode_vector, encode_vector
from thesisrag.models import ChunkRecord, DocumentMetadata

LOGGER = logging.getLogger(__name__)

DOCUMENTS_TABLE = "documents"
CHUNKS_TABLE = "document_chunks"
MATCH_FUNCTION = "match_document_chunks"
PAGE_SIZE = 1000


class RestVectorStore:
    """Talks to the hosted relational store, its vector RPC and object storage."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        bucket: str = "documents",
        text_search_config: str = "french",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.text_search_config = text_search_config
        self._headers = {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers={**self._headers, **(headers or {})},
            )
        except httpx.HTTPError as exc:
            LOGGER.error("%s %s failed: %s", method, path, exc)
            raise PersistenceFailure(f"{method} {path} failed: {exc}") from exc

        if not response.is_success:
            raise PersistenceFailure(
                f"{method} {path} returned {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    async def _count(self, table: str, params: Optional[Dict[str, Any]] = None) -> int:
        response = await self._request(
            "GET",
            f"/rest/v1/{table}",
            params={"select": "id", "limit": 1, **(params or {})},
            headers={"Prefer": "count=exact"},
        )
        content_range = response.headers.get("content-range", "")
        total = content_range.rpartition("/")[2]
        return int(total) if total.isdigit() else 0

    # Documents ---------------------------------------------------------

    async def get_document(self, document_id: str) -> DocumentMetadata:
        response = await self._request(
            "GET",
            f"/rest/v1/{DOCUMENTS_TABLE}",
            params={"select": "*", "id": f"eq.{document_id}"},
        )
        rows = response.json()
        if not rows:
            raise NotFound(f"Document not found: {document_id}")
        return DocumentMetadata.from_row(rows[0])

    async def list_documents(self) -> List[DocumentMetadata]:
        rows = await self._paginate(DOCUMENTS_TABLE, "id,title,author,file_path,year,domain")
        return [DocumentMetadata.from_row(row) for row in rows]

    async def list_processed_document_ids(self) -> Set[str]:
        rows = await self._paginate(CHUNKS_TABLE, "document_id")
        return {str(row["document_id"]) for row in rows}

    async def _paginate(self, table: str, select: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            response = await self._request(
                "GET",
                f"/rest/v1/{table}",
                params={"select": select, "order": "id", "limit": PAGE_SIZE, "offset": offset},
            )
            page = response.json()
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    # Object storage ----------------------------------------------------

    async def create_signed_url(self, file_path: str, expires_in: int = 3600) -> str:
        if not file_path:
            raise PersistenceFailure("Document has no stored file")
        response = await self._request(
            "POST",
            f"/storage/v1/object/sign/{self.bucket}/{quote(file_path)}",
            json={"expiresIn": expires_in},
        )
        body = response.json()
        signed = body.get("signedURL") or body.get("signedUrl")
        if not signed:
            raise PersistenceFailure("Failed to get document URL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    async def download(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise PersistenceFailure(f"Failed to fetch PDF: {exc}") from exc
        if not response.is_success:
            raise PersistenceFailure(
                f"Failed to fetch PDF: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response.content

    # Chunks ------------------------------------------------------------

    async def insert_chunks(self, chunks: Sequence[ChunkRecord]) -> None:
        if not chunks:
            return
        await self._request(
            "POST",
            f"/rest/v1/{CHUNKS_TABLE}",
            json=[chunk_row(chunk) for chunk in chunks],
            headers={"Prefer": "return=minimal"},
        )

    async def replace_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> None:
        """Insert the new rows first, then drop the old ones by id.

        A failed insert leaves the previous chunks in place.
        """
        response = await self._request(
            "GET",
            f"/rest/v1/{CHUNKS_TABLE}",
            params={"select": "id", "document_id": f"eq.{document_id}"},
        )
        old_ids = [str(row["id"]) for row in response.json() or []]
        await self.insert_chunks(chunks)
        if old_ids:
            await self._request(
                "DELETE",
                f"/rest/v1/{CHUNKS_TABLE}",
                params={"id": f"in.({','.join(old_ids)})"},
            )

    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        *,
        threshold: float,
        limit: int,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        params = None
        if document_ids:
            params = {"document_id": f"in.({','.join(document_ids)})"}
        response = await self._request(
            "POST",
            f"/rest/v1/rpc/{MATCH_FUNCTION}",
            params=params,
            json={
                "query_embedding": encode_vector(query_embedding),
                "match_threshold": threshold,
                "match_count": limit,
            },
        )
        return [
            {
                "id": str(row["id"]),
                "document_id": str(row["document_id"]),
                "content": row["content"],
                "page_number": _page_number(row),
                "similarity": float(row["similarity"]),
            }
            for row in response.json() or []
        ]

    async def text_search(self, query: str, *, limit: int) -> List[Dict[str, Any]]:
        if not query.strip() or limit <= 0:
            return []
        response = await self._request(
            "GET",
            f"/rest/v1/{CHUNKS_TABLE}",
            params={
                "select": "id,document_id,content,metadata,documents!inner(title,author,year,domain)",
                "content": f"wfts({self.text_search_config}).{query}",
                "limit": limit,
            },
        )
        return [
            {
                "id": str(row["id"]),
                "document_id": str(row["document_id"]),
                "content": row["content"],
                "page_number": _page_number(row),
                "document": row.get("documents") or {},
            }
            for row in response.json() or []
        ]

    async def get_chunk_embeddings(self, document_id: str) -> List[List[float]]:
        response = await self._request(
            "GET",
            f"/rest/v1/{CHUNKS_TABLE}",
            params={"select": "embedding", "document_id": f"eq.{document_id}"},
        )
        return [decode_vector(row["embedding"]) for row in response.json() or []]

    async def count_documents(self) -> int:
        return await self._count(DOCUMENTS_TABLE)

    async def count_chunks(self, document_id: Optional[str] = None) -> int:
        params = {"document_id": f"eq.{document_id}"} if document_id is not None else None
        return await self._count(CHUNKS_TABLE, params)

    async def delete_chunks(self, document_id: str) -> None:
        await self._request(
            "DELETE",
            f"/rest/v1/{CHUNKS_TABLE}",
            params={"document_id": f"eq.{document_id}"},
        )


def _page_number(row: Dict[str, Any]) -> int:
    if row.get("page_number") is not None:
        return int(row["page_number"])
    metadata = row.get("metadata") or {}
    return int(metadata.get("page_number") or 1)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or response.reason_phrase)
    return response.reason_phrase
