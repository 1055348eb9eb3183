"""Database models for the knowledge base."""

from coach_rag.models.knowledge import (
    KnowledgeCategory,
    KnowledgeChunk,
    KnowledgeItem,
    KnowledgeStatus,
    RetrievalConfigurationRow,
    knowledge_item_categories,
)

__all__ = [
    "KnowledgeCategory",
    "KnowledgeChunk",
    "KnowledgeItem",
    "KnowledgeStatus",
    "RetrievalConfigurationRow",
    "knowledge_item_categories",
]
