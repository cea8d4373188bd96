"""Text helpers including the paragraph-aware chunker."""

from __future__ import annotations

import re
from typing import List, Tuple

from thesisrag.models import ChunkRecord

PAGE_MARKER_TEMPLATE = "--- Page {number} ---"
PAGE_MARKER_RE = re.compile(r"--- Page (\d+) ---")

_HORIZONTAL_WS_RE = re.compile(r"[^\S\n]+")
_SPACE_AROUND_NEWLINE_RE = re.compile(r" *\n *")
_EXCESS_NEWLINES_RE = re.compile(r"\n{3,}")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n+")


def page_marker(number: int) -> str:
    return PAGE_MARKER_TEMPLATE.format(number=number)


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs to single spaces and cap blank lines at one."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS_RE.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE_RE.sub("\n", text)
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def split_pages(text: str) -> List[Tuple[int, str]]:
    """Split marked-up text into ``(page_number, page_text)`` pairs.

    Page numbers come from the markers themselves. Text found before the
    first marker is attributed to page 1.
    """
    pages: List[Tuple[int, str]] = []
    matches = list(PAGE_MARKER_RE.finditer(text))
    if not matches:
        return [(1, text)] if text.strip() else []

    leading = text[: matches[0].start()]
    if leading.strip():
        pages.append((1, leading))

    for position, match in enumerate(matches):
        end = matches[position + 1].start() if position + 1 < len(matches) else len(text)
        pages.append((int(match.group(1)), text[match.end() : end]))
    return pages


def split_paragraphs(page_text: str, *, min_chars: int = 50) -> List[str]:
    """Return blank-line separated paragraphs, dropping short noise such as headers."""
    paragraphs = (part.strip() for part in _PARAGRAPH_SPLIT_RE.split(page_text))
    return [part for part in paragraphs if len(part) >= min_chars]


def _seed_with_overlap(previous: str, paragraph: str, overlap: int, limit: int) -> str:
    """Start a new buffer with the tail of ``previous`` followed by ``paragraph``.

    The tail is shortened so that the seeded buffer stays within ``limit``.
    """
    tail = previous[-overlap:] if overlap > 0 else ""
    room = limit - len(paragraph) - 1
    if room <= 0:
        return paragraph
    if len(tail) > room:
        tail = tail[-room:]
    tail = tail.strip()
    return f"{tail} {paragraph}" if tail else paragraph


def chunk_document(
    text: str,
    *,
    chunk_size: int = 1000,
    overlap: int = 200,
    min_paragraph_chars: int = 50,
    document_id: str = "",
) -> List[ChunkRecord]:
    """Split extracted text into overlapping, page-tagged chunks.

    Paragraphs are accumulated greedily until the next one would overflow
    ``chunk_size``; the closed chunk's last ``overlap`` characters then seed
    the following chunk. A single paragraph longer than ``chunk_size`` is
    kept whole. Indices are global to the document and start at 0.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError(f"Overlap ({overlap}) must be in [0, chunk size ({chunk_size}))")

    limit = chunk_size + overlap
    chunks: List[ChunkRecord] = []

    def emit(content: str, page_number: int) -> None:
        chunks.append(
            ChunkRecord(
                document_id=document_id,
                index=len(chunks),
                page_number=page_number,
                text=content,
            )
        )

    for page_number, page_text in split_pages(normalize_whitespace(text)):
        buffer = ""
        for paragraph in split_paragraphs(page_text, min_chars=min_paragraph_chars):
            if buffer and len(buffer) + 1 + len(paragraph) > chunk_size:
                emit(buffer, page_number)
                buffer = _seed_with_overlap(buffer, paragraph, overlap, limit)
            elif buffer:
                buffer = f"{buffer} {paragraph}"
            else:
                buffer = paragraph
        if buffer.strip():
            emit(buffer.strip(), page_number)

    return chunks
