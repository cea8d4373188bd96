"""ThesisRAG: retrieval-augmented search over academic theses."""

__version__ = "0.1.0"
