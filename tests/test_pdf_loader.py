"""Tests for PDF extraction and chunking."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from conftest import LOREM, make_pdf
from thesisrag.errors import ExtractionFailure, InsufficientContent
from thesisrag.ingestion.pdf_loader import (
    extract_text_from_pdf,
    get_pdf_metadata,
    iter_page_texts,
    process_pdf_document,
)
from thesisrag.models import DocumentMetadata


def _mock_doc(page_texts):
    pages = []
    for text in page_texts:
        page = MagicMock()
        page.get_text.return_value = text
        pages.append(page)
    doc = MagicMock()
    doc.__len__ = MagicMock(return_value=len(pages))
    doc.__getitem__ = MagicMock(side_effect=lambda i: pages[i])
    return doc


class TestIterPageTexts:
    """Test page iteration with a mocked PyMuPDF."""

    @patch("thesisrag.ingestion.pdf_loader.fitz")
    def test_joins_text_runs(self, mock_fitz: MagicMock) -> None:
        """Lines of a page are joined with single spaces."""
        mock_fitz.open.return_value = _mock_doc(["line one\n  line two \n\n"])

        assert list(iter_page_texts(b"pdf")) == [(1, "line one line two")]

    @patch("thesisrag.ingestion.pdf_loader.fitz")
    def test_pages_are_one_indexed(self, mock_fitz: MagicMock) -> None:
        mock_fitz.open.return_value = _mock_doc(["A", "B", "C"])

        assert [n for n, _ in iter_page_texts(b"pdf")] == [1, 2, 3]

    @patch("thesisrag.ingestion.pdf_loader.fitz")
    def test_zero_pages(self, mock_fitz: MagicMock) -> None:
        doc = _mock_doc([])
        mock_fitz.open.return_value = doc

        with pytest.raises(ExtractionFailure):
            list(iter_page_texts(b"pdf"))
        doc.close.assert_called_once()

    @patch("thesisrag.ingestion.pdf_loader.fitz")
    def test_open_failure(self, mock_fitz: MagicMock) -> None:
        mock_fitz.open.side_effect = RuntimeError("cannot open broken document")

        with pytest.raises(ExtractionFailure, match="broken document"):
            list(iter_page_texts(b"garbage"))


class TestExtractTextFromPdf:
    @patch("thesisrag.ingestion.pdf_loader.fitz")
    def test_page_markers(self, mock_fitz: MagicMock) -> None:
        mock_fitz.open.return_value = _mock_doc(["first", "second"])

        text = extract_text_from_pdf(b"pdf")

        assert text == "--- Page 1 ---\n\nfirst\n\n--- Page 2 ---\n\nsecond"

    def test_real_pdf(self) -> None:
        text = extract_text_from_pdf(make_pdf(["Hello page one", "Hello page two"]))

        assert text.startswith("--- Page 1 ---")
        assert "Hello page one" in text
        assert text.index("--- Page 2 ---") < text.index("Hello page two")

    def test_corrupt_input(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract_text_from_pdf(b"this is not a pdf")

    def test_empty_input(self) -> None:
        with pytest.raises(ExtractionFailure):
            extract_text_from_pdf(b"")


@patch("thesisrag.ingestion.pdf_loader.fitz")
def test_get_pdf_metadata(mock_fitz: MagicMock) -> None:
    doc = _mock_doc(["a", "b", "c"])
    doc.metadata = {"title": "My Thesis", "author": None}
    mock_fitz.open.return_value = doc

    metadata = get_pdf_metadata(b"pdf")

    assert metadata == {"title": "My Thesis", "author": "", "page_count": "3"}
    doc.close.assert_called_once()


class TestProcessPdfDocument:
    """Extraction followed by chunking."""

    document = DocumentMetadata(id="doc-1", title="A Thesis")

    def test_chunks_are_stamped(self) -> None:
        data = make_pdf([LOREM, LOREM, LOREM])

        chunks = process_pdf_document(data, self.document)

        assert [c.page_number for c in chunks] == [1, 2, 3]
        assert [c.index for c in chunks] == [0, 1, 2]
        assert all(c.document_id == "doc-1" for c in chunks)
        assert all(c.embedding is None for c in chunks)

    def test_too_little_text(self) -> None:
        with pytest.raises(InsufficientContent):
            process_pdf_document(make_pdf(["Hi"]), self.document)

    @patch("thesisrag.ingestion.pdf_loader.fitz")
    def test_only_noise_paragraphs(self, mock_fitz: MagicMock) -> None:
        """Enough text overall, but every page is shorter than a paragraph."""
        mock_fitz.open.return_value = _mock_doc(["page header"] * 12)

        with pytest.raises(InsufficientContent, match="No usable paragraphs"):
            process_pdf_document(b"pdf", self.document)
