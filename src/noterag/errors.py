"""Exception hierarchy shared by the retrieval core."""

from __future__ import annotations


class NoteRAGError(RuntimeError):
    """Base class for all NoteRAG failures."""


class ProviderError(NoteRAGError):
    """Raised when an embedding or generation provider cannot serve a request."""


class ProviderAuthenticationError(ProviderError):
    """Raised by providers when credentials are rejected."""


class NotFoundError(NoteRAGError, LookupError):
    """Raised when a requested resource is neither resident nor restorable."""


class CollectionNotFoundError(NotFoundError):
    """Raised when a vector collection id is unknown."""


class ContextNotFoundError(NotFoundError):
    """Raised when a document has no usable RAG context; callers must reinitialize it."""


class EmbeddingDimensionError(NoteRAGError, ValueError):
    """Raised when an embedding does not match its collection's dimension."""
