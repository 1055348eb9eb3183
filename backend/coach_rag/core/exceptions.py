"""Typed failures raised by the retrieval core."""


class KnowledgeBaseError(Exception):
    """Base exception for knowledge base retrieval errors."""

    pass


class RetrievalUnavailable(KnowledgeBaseError):
    """Chunk or configuration store could not be reached."""

    pass


class EmbeddingUnavailable(KnowledgeBaseError):
    """Embedding provider failed or was unreachable."""

    pass


class RetrievalFailed(KnowledgeBaseError):
    """No grounding could be produced for the query.

    Raised when the primary embedding call fails after retry or when the
    knowledge base has no searchable chunks at all. Callers decide whether
    to answer without grounding.
    """

    def __init__(self, message: str, reason: str = "unknown") -> None:
        super().__init__(message)
        self.reason = reason


class MalformedEmbedding(KnowledgeBaseError, ValueError):
    """Stored embedding could not be parsed into a numeric vector."""

    pass


class ConfigurationError(KnowledgeBaseError, ValueError):
    """Retrieval configuration values are out of bounds."""

    pass
