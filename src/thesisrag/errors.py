"""Exception hierarchy for the RAG pipeline."""

from __future__ import annotations


class RAGError(Exception):
    """Base class for every error raised by thesisrag."""


class ExtractionFailure(RAGError):
    """The PDF could not be opened or parsed."""


class InsufficientContent(RAGError):
    """Extraction succeeded but produced too little text to index."""


class ProviderFailure(RAGError):
    """An embedding or chat provider answered with a non-success response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DimensionMismatch(RAGError, ValueError):
    """Two vectors of different lengths were compared."""


class InvalidVector(RAGError, ValueError):
    """A vector cannot be normalized (zero norm)."""


class PersistenceFailure(RAGError):
    """The backing store rejected a read or write."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFound(RAGError, LookupError):
    """A referenced document or chunk does not exist."""
