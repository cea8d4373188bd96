"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List

import fitz
import pytest

from thesisrag.embedding.encoder import MockEmbeddings
from thesisrag.index.indexer import reset_rag_service
from thesisrag.index.storage import SQLiteVectorStore

LOREM = (
    "Neural networks learn hierarchical representations of their input data "
    "through successive nonlinear transformations."
)


def make_pdf(pages: List[str]) -> bytes:
    """Build an in-memory PDF with one text line per entry of ``pages``."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text, fontsize=8)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def pdf_factory(tmp_path: Path) -> Callable[[str, List[str]], Path]:
    """Write a generated PDF under ``tmp_path`` and return its path."""

    def factory(name: str, pages: List[str]) -> Path:
        path = tmp_path / f"{name}.pdf"
        path.write_bytes(make_pdf(pages))
        return path

    return factory


@pytest.fixture
def temp_store(tmp_path: Path):
    store = SQLiteVectorStore(tmp_path / "test.db")
    yield store
    store.close()


@pytest.fixture
def embedder() -> MockEmbeddings:
    return MockEmbeddings(dimensionality=32)


@pytest.fixture(autouse=True)
def _reset_singleton():
    reset_rag_service()
    yield
    reset_rag_service()
