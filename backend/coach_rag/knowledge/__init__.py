"""Knowledge base retrieval for grounding AI coaching answers.

This module scores knowledge base chunks against a query, ranks and
diversifies them, assembles the context block for the generator and checks
generated answers against the retrieved evidence.
"""

from coach_rag.knowledge.citations import validate
from coach_rag.knowledge.context import assemble
from coach_rag.knowledge.diversifier import diversify
from coach_rag.knowledge.intent import classify_intent
from coach_rag.knowledge.models import (
    Citation,
    ChunkFilter,
    ChunkRecord,
    QueryIntent,
    RetrievalCandidate,
    RetrievalConfiguration,
    RetrievedContext,
    ValidationReport,
)
from coach_rag.knowledge.pipeline import (
    get_retrieval_pipeline,
    initialize_retrieval_pipeline,
    RetrievalPipeline,
)
from coach_rag.knowledge.prioritizer import prioritize
from coach_rag.knowledge.similarity import cosine_similarity

__all__ = [
    "Citation",
    "ChunkFilter",
    "ChunkRecord",
    "QueryIntent",
    "RetrievalCandidate",
    "RetrievalConfiguration",
    "RetrievedContext",
    "ValidationReport",
    "RetrievalPipeline",
    "assemble",
    "classify_intent",
    "cosine_similarity",
    "diversify",
    "get_retrieval_pipeline",
    "initialize_retrieval_pipeline",
    "prioritize",
    "validate",
]
