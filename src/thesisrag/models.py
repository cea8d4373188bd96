"""Core ThesisRAG data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ProcessingStatus(str, Enum):
    """Lifecycle of a document inside the ingestion pipeline."""

    UNPROCESSED = "unprocessed"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass(slots=True)
class DocumentMetadata:
    """A thesis as stored in the relational store."""

    id: str
    title: str
    author: str = ""
    file_path: str = ""
    year: Optional[int] = None
    domain: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DocumentMetadata":
        year = row.get("year")
        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            author=row.get("author") or "",
            file_path=row.get("file_path") or "",
            year=int(year) if year not in (None, "") else None,
            domain=row.get("domain") or "",
        )

    def display_metadata(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "year": self.year,
            "domain": self.domain,
        }


@dataclass(slots=True)
class ChunkRecord:
    """Chunk of document text paired with its page and embedding."""

    document_id: str
    index: int
    page_number: int
    text: str
    embedding: Optional[List[float]] = None
    id: Optional[str] = None


@dataclass(slots=True)
class SearchResult:
    """A scored chunk returned by a query; never persisted."""

    document_id: str
    chunk_id: str
    content: str
    page_number: int
    similarity: float
    metadata: Optional[Dict[str, Any]] = None


@dataclass(slots=True)
class RAGStats:
    total_documents: int = 0
    processed_documents: int = 0
    total_chunks: int = 0
    average_chunks_per_document: int = 0


@dataclass(slots=True)
class BatchStats:
    """Outcome of a batch ingestion run."""

    total: int = 0
    processed: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    cancelled: bool = False

    def record(self, document_id: str, ok: bool) -> None:
        if ok:
            self.processed += 1
        else:
            self.failed += 1
            self.failed_ids.append(document_id)
