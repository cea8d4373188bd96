"""PDF text extraction and chunking.

Uses PyMuPDF (fitz) to read PDFs straight from memory: the bytes come from
object storage, never from the local filesystem.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List

import fitz  # PyMuPDF

from thesisrag.errors import ExtractionFailure, InsufficientContent
from thesisrag.models import ChunkRecord, DocumentMetadata
from thesisrag.utils.text import chunk_document, page_marker

LOGGER = logging.getLogger(__name__)


def _open_pdf(data: bytes) -> "fitz.Document":
    if not data:
        raise ExtractionFailure("Failed to extract text from PDF: empty input")
    try:
        return fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        LOGGER.error("Failed to open PDF (%d bytes): %s", len(data), exc)
        raise ExtractionFailure(f"Failed to extract text from PDF: {exc}") from exc


def iter_page_texts(data: bytes) -> Iterator[tuple[int, str]]:
    """Yield ``(page_number, text)`` for each page, 1-indexed.

    Text runs of a page are joined with single spaces.
    """
    doc = _open_pdf(data)
    try:
        if len(doc) == 0:
            raise ExtractionFailure("Failed to extract text from PDF: document has no pages")
        for index in range(len(doc)):
            try:
                raw = doc[index].get_text() or ""
            except Exception as exc:  # pragma: no cover - damaged page
                LOGGER.warning("Failed to read page %s: %s", index + 1, exc)
                raw = ""
            runs = (line.strip() for line in raw.splitlines())
            yield index + 1, " ".join(run for run in runs if run)
    finally:
        doc.close()


def extract_text_from_pdf(data: bytes) -> str:
    """Return the full text of a PDF with a page marker before every page."""
    parts = [
        f"\n\n{page_marker(number)}\n\n{text}" for number, text in iter_page_texts(data)
    ]
    return "".join(parts).strip()


def get_pdf_metadata(data: bytes) -> Dict[str, str]:
    """Extract the embedded title and page count of an in-memory PDF."""
    doc = _open_pdf(data)
    try:
        metadata = doc.metadata or {}
        return {
            "title": metadata.get("title") or "",
            "author": metadata.get("author") or "",
            "page_count": str(len(doc)),
        }
    finally:
        doc.close()


def process_pdf_document(
    data: bytes,
    document: DocumentMetadata,
    *,
    chunk_size: int = 1000,
    overlap: int = 200,
    min_text_chars: int = 100,
    min_paragraph_chars: int = 50,
) -> List[ChunkRecord]:
    """Extract and chunk a PDF belonging to ``document``."""
    LOGGER.info("Extracting text from PDF: %s", document.title)
    full_text = extract_text_from_pdf(data)

    if len(full_text) < min_text_chars:
        raise InsufficientContent(
            f"Insufficient text extracted from PDF {document.title!r} "
            f"({len(full_text)} characters)"
        )

    LOGGER.info("Chunking document: %s (%d characters)", document.title, len(full_text))
    chunks = chunk_document(
        full_text,
        chunk_size=chunk_size,
        overlap=overlap,
        min_paragraph_chars=min_paragraph_chars,
        document_id=document.id,
    )
    if not chunks:
        raise InsufficientContent(f"No usable paragraphs found in PDF {document.title!r}")
    LOGGER.info("Created %d chunks for document: %s", len(chunks), document.title)
    return chunks
