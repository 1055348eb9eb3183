"""Knowledge base tables.

The upload and admin subsystems own these tables; the retrieval core only
reads them.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from coach_rag.core.database import Base


class KnowledgeStatus(str, enum.Enum):
    """Lifecycle status of an uploaded document."""

    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


knowledge_item_categories = Table(
    "knowledge_item_categories",
    Base.metadata,
    Column(
        "knowledge_item_id",
        ForeignKey("knowledge_items.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "category_id",
        ForeignKey("knowledge_categories.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class KnowledgeCategory(Base):
    """Category tag such as "chest" or "hypertrophy_programs"."""

    __tablename__ = "knowledge_categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, index=True)

    items: Mapped[list["KnowledgeItem"]] = relationship(
        "KnowledgeItem",
        secondary=knowledge_item_categories,
        back_populates="categories",
    )

    def __repr__(self) -> str:
        return f"<KnowledgeCategory(id={self.id}, name={self.name})>"


class KnowledgeItem(Base):
    """Uploaded article. Only READY items are searchable."""

    __tablename__ = "knowledge_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(500))
    status: Mapped[KnowledgeStatus] = mapped_column(
        Enum(KnowledgeStatus, name="knowledge_status"),
        default=KnowledgeStatus.PROCESSING,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    categories: Mapped[list[KnowledgeCategory]] = relationship(
        KnowledgeCategory,
        secondary=knowledge_item_categories,
        back_populates="items",
    )
    chunks: Mapped[list["KnowledgeChunk"]] = relationship(
        "KnowledgeChunk",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="KnowledgeChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return f"<KnowledgeItem(id={self.id}, title={self.title}, status={self.status})>"


class KnowledgeChunk(Base):
    """Ordered fragment of an item with its write-once embedding."""

    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint("knowledge_item_id", "chunk_index", name="uq_chunk_parent_index"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    knowledge_item_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_items.id", ondelete="CASCADE"),
        index=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    # JSON array of floats, NULL until the embedding job runs
    embedding_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    item: Mapped[KnowledgeItem] = relationship(KnowledgeItem, back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<KnowledgeChunk(id={self.id}, item={self.knowledge_item_id}, "
            f"index={self.chunk_index})>"
        )


class RetrievalConfigurationRow(Base):
    """Admin-edited retrieval settings. One row per tenant, last write wins."""

    __tablename__ = "retrieval_configurations"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)

    similarity_threshold: Mapped[float] = mapped_column(Float, default=0.7)
    high_relevance_threshold: Mapped[float] = mapped_column(Float, default=0.85)
    max_chunks: Mapped[int] = mapped_column(Integer, default=5)
    per_source_cap: Mapped[int] = mapped_column(Integer, default=2)
    category_priority: Mapped[bool] = mapped_column(Boolean, default=True)
    strict_muscle_priority: Mapped[bool] = mapped_column(Boolean, default=False)
    use_knowledge_base: Mapped[bool] = mapped_column(Boolean, default=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<RetrievalConfigurationRow(tenant={self.tenant_id}, "
            f"threshold={self.similarity_threshold}, max_chunks={self.max_chunks})>"
        )
