"""Persistence boundary: store protocol, vector serialization and SQLite store."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Set
from urllib.parse import urlparse
from urllib.request import url2pathname

import numpy as np

from thesisrag.errors import DimensionMismatch, NotFound, PersistenceFailure
from thesisrag.models import ChunkRecord, DocumentMetadata

LOGGER = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+", re.UNICODE)

INSERT_CHUNK_SQL = """
    INSERT INTO document_chunks(document_id, chunk_index, content, embedding, metadata)
    VALUES (?, ?, ?, ?, ?)
"""


def encode_vector(vector: Sequence[float]) -> str:
    """Serialize a vector the way pgvector expects it: ``[0.1,0.2,...]``."""
    return "[" + ",".join(repr(float(value)) for value in vector) + "]"


def decode_vector(value: Any) -> List[float]:
    """Inverse of :func:`encode_vector`; also accepts already-decoded lists."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(f"Malformed stored vector: {value[:40]!r}") from exc
    if not isinstance(value, (list, tuple)):
        raise PersistenceFailure(f"Unexpected stored vector type: {type(value).__name__}")
    return [float(component) for component in value]


def chunk_row(chunk: ChunkRecord) -> Dict[str, Any]:
    """Row shape written to the chunk table."""
    if chunk.embedding is None:
        raise ValueError(f"Chunk {chunk.index} of {chunk.document_id} has no embedding")
    return {
        "document_id": chunk.document_id,
        "chunk_index": chunk.index,
        "content": chunk.text,
        "embedding": encode_vector(chunk.embedding),
        "metadata": {"page_number": chunk.page_number},
    }


def query_terms(query: str) -> List[str]:
    return [term.lower() for term in _TERM_RE.findall(query)]


class VectorStore(Protocol):
    """Operations the pipeline needs from the relational/vector/object store."""

    async def get_document(self, document_id: str) -> DocumentMetadata: ...

    async def list_documents(self) -> List[DocumentMetadata]: ...

    async def list_processed_document_ids(self) -> Set[str]: ...

    async def create_signed_url(self, file_path: str, expires_in: int = 3600) -> str: ...

    async def download(self, url: str) -> bytes: ...

    async def insert_chunks(self, chunks: Sequence[ChunkRecord]) -> None: ...

    async def replace_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> None: ...

    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        *,
        threshold: float,
        limit: int,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]: ...

    async def text_search(self, query: str, *, limit: int) -> List[Dict[str, Any]]: ...

    async def get_chunk_embeddings(self, document_id: str) -> List[List[float]]: ...

    async def count_documents(self) -> int: ...

    async def count_chunks(self, document_id: Optional[str] = None) -> int: ...

    async def delete_chunks(self, document_id: str) -> None: ...

    async def aclose(self) -> None: ...


class SQLiteVectorStore:
    """Local store for offline use and tests.

    Similarity search is a brute-force cosine scan in numpy; keyword search
    uses FTS5 when the SQLite build provides it.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        self.has_fts = False
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    async def aclose(self) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise PersistenceFailure(f"SQLite error: {exc}") from exc
        except Exception:
            self._conn.rollback()
            raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a read statement; SQLite errors surface as PersistenceFailure."""
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"SQLite error: {exc}") from exc

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT,
                    file_path TEXT,
                    year INTEGER,
                    domain TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_chunks (
                    id INTEGER PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    embedding TEXT NOT NULL,
                    metadata TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(document_id, chunk_index),
                    FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON document_chunks(document_id)
                """
            )
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                        content, content='document_chunks', content_rowid='id'
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TRIGGER IF NOT EXISTS chunks_fts_insert
                    AFTER INSERT ON document_chunks BEGIN
                        INSERT INTO chunks_fts(rowid, content) VALUES (new.id, new.content);
                    END;
                    """
                )
                conn.execute(
                    """
                    CREATE TRIGGER IF NOT EXISTS chunks_fts_delete
                    AFTER DELETE ON document_chunks BEGIN
                        INSERT INTO chunks_fts(chunks_fts, rowid, content)
                        VALUES ('delete', old.id, old.content);
                    END;
                    """
                )
            self.has_fts = True
        except PersistenceFailure as exc:
            LOGGER.info("FTS5 unavailable, keyword search falls back to term matching: %s", exc)

    # Documents ---------------------------------------------------------

    def add_document(self, document: DocumentMetadata) -> None:
        """Insert or update a document's metadata."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents(id, title, author, file_path, year, domain)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    author = excluded.author,
                    file_path = excluded.file_path,
                    year = excluded.year,
                    domain = excluded.domain
                """,
                (
                    document.id,
                    document.title,
                    document.author,
                    document.file_path,
                    document.year,
                    document.domain,
                ),
            )

    def delete_document(self, document_id: str) -> bool:
        """Delete a document; its chunks go with it."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return cursor.rowcount > 0

    async def get_document(self, document_id: str) -> DocumentMetadata:
        rows = self._query("SELECT * FROM documents WHERE id = ?", (document_id,))
        if not rows:
            raise NotFound(f"Document not found: {document_id}")
        return DocumentMetadata.from_row(dict(rows[0]))

    async def list_documents(self) -> List[DocumentMetadata]:
        rows = self._query("SELECT * FROM documents ORDER BY created_at, id")
        return [DocumentMetadata.from_row(dict(row)) for row in rows]

    async def list_processed_document_ids(self) -> Set[str]:
        rows = self._query("SELECT DISTINCT document_id FROM document_chunks")
        return {row["document_id"] for row in rows}

    # Object storage ----------------------------------------------------

    async def create_signed_url(self, file_path: str, expires_in: int = 3600) -> str:
        """Local files need no signing; a ``file://`` URI stands in for the signed URL."""
        if not file_path:
            raise PersistenceFailure("Document has no stored file")
        return Path(file_path).expanduser().resolve().as_uri()

    async def download(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise PersistenceFailure(f"Local store cannot fetch {parsed.scheme or 'relative'} URLs")
        path = Path(url2pathname(parsed.path))
        try:
            return path.read_bytes()
        except OSError as exc:
            raise PersistenceFailure(f"Failed to fetch PDF: {exc}") from exc

    # Chunks ------------------------------------------------------------

    async def insert_chunks(self, chunks: Sequence[ChunkRecord]) -> None:
        rows = _chunk_params(chunks)
        with self.transaction() as conn:
            conn.executemany(INSERT_CHUNK_SQL, rows)

    async def replace_chunks(self, document_id: str, chunks: Sequence[ChunkRecord]) -> None:
        """Swap a document's chunks in one transaction; old rows survive a failed insert."""
        rows = _chunk_params(chunks)
        with self.transaction() as conn:
            conn.execute("DELETE FROM document_chunks WHERE document_id = ?", (document_id,))
            conn.executemany(INSERT_CHUNK_SQL, rows)

    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        *,
        threshold: float,
        limit: int,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT id, document_id, content, metadata, embedding FROM document_chunks"
        params: List[Any] = []
        if document_ids:
            sql += f" WHERE document_id IN ({','.join('?' for _ in document_ids)})"
            params.extend(document_ids)
        rows = self._query(sql, params)
        if not rows or limit <= 0:
            return []

        query = np.asarray(query_embedding, dtype="float64")
        vectors = []
        for row in rows:
            vector = decode_vector(row["embedding"])
            if len(vector) != query.shape[0]:
                raise DimensionMismatch(
                    f"Query has {query.shape[0]} dimensions, chunk {row['id']} has {len(vector)}"
                )
            vectors.append(vector)
        matrix = np.asarray(vectors, dtype="float64")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = np.inf
        scores = (matrix @ query) / norms

        order = np.argsort(scores)[::-1]
        results: List[Dict[str, Any]] = []
        for idx in order:
            if scores[idx] < threshold or len(results) >= limit:
                break
            row = rows[idx]
            results.append(
                {
                    "id": str(row["id"]),
                    "document_id": row["document_id"],
                    "content": row["content"],
                    "page_number": _page_number(row["metadata"]),
                    "similarity": float(scores[idx]),
                }
            )
        return results

    async def text_search(self, query: str, *, limit: int) -> List[Dict[str, Any]]:
        terms = query_terms(query)
        if not terms or limit <= 0:
            return []
        if self.has_fts:
            match = " OR ".join(f'"{term}"' for term in terms)
            rows = self._query(
                """
                SELECT c.id, c.document_id, c.content, c.metadata,
                       d.title, d.author, d.year, d.domain
                FROM chunks_fts
                JOIN document_chunks c ON c.id = chunks_fts.rowid
                JOIN documents d ON d.id = c.document_id
                WHERE chunks_fts MATCH ?
                ORDER BY bm25(chunks_fts)
                LIMIT ?
                """,
                (match, limit),
            )
        else:
            rows = self._term_overlap_search(terms, limit)
        return [_keyword_row(row) for row in rows]

    def _term_overlap_search(self, terms: List[str], limit: int) -> List[sqlite3.Row]:
        rows = self._query(
            """
            SELECT c.id, c.document_id, c.content, c.metadata,
                   d.title, d.author, d.year, d.domain
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
            """
        )
        scored = []
        for row in rows:
            words = set(query_terms(row["content"]))
            hits = sum(1 for term in terms if term in words)
            if hits:
                scored.append((hits, row))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [row for _, row in scored[:limit]]

    async def get_chunk_embeddings(self, document_id: str) -> List[List[float]]:
        rows = self._query(
            "SELECT embedding FROM document_chunks WHERE document_id = ? ORDER BY chunk_index",
            (document_id,),
        )
        return [decode_vector(row["embedding"]) for row in rows]

    async def get_chunks(self, document_id: str) -> List[ChunkRecord]:
        """Load a document's chunks with their vectors, for in-memory search."""
        rows = self._query(
            """
            SELECT id, document_id, chunk_index, content, metadata, embedding
            FROM document_chunks WHERE document_id = ? ORDER BY chunk_index
            """,
            (document_id,),
        )
        return [
            ChunkRecord(
                document_id=row["document_id"],
                index=row["chunk_index"],
                page_number=_page_number(row["metadata"]),
                text=row["content"],
                embedding=decode_vector(row["embedding"]),
                id=str(row["id"]),
            )
            for row in rows
        ]

    async def count_documents(self) -> int:
        return int(self._query("SELECT COUNT(*) FROM documents")[0][0])

    async def count_chunks(self, document_id: Optional[str] = None) -> int:
        if document_id is None:
            rows = self._query("SELECT COUNT(*) FROM document_chunks")
        else:
            rows = self._query(
                "SELECT COUNT(*) FROM document_chunks WHERE document_id = ?", (document_id,)
            )
        return int(rows[0][0])

    async def delete_chunks(self, document_id: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM document_chunks WHERE document_id = ?", (document_id,))


def _chunk_params(chunks: Sequence[ChunkRecord]) -> List[tuple]:
    return [
        (
            row["document_id"],
            row["chunk_index"],
            row["content"],
            row["embedding"],
            json.dumps(row["metadata"], ensure_ascii=True),
        )
        for row in (chunk_row(chunk) for chunk in chunks)
    ]


def _page_number(metadata: Any) -> int:
    if isinstance(metadata, str):
        metadata = json.loads(metadata) if metadata else {}
    if not isinstance(metadata, dict):
        return 1
    return int(metadata.get("page_number") or 1)


def _keyword_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": str(row["id"]),
        "document_id": row["document_id"],
        "content": row["content"],
        "page_number": _page_number(row["metadata"]),
        "document": {
            "title": row["title"],
            "author": row["author"],
            "year": row["year"],
            "domain": row["domain"],
        },
    }
