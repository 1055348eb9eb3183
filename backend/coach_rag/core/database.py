"""Async database engine and session factory."""

from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from coach_rag.core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for knowledge base tables."""

    pass


@lru_cache
def get_engine() -> AsyncEngine:
    """Create the shared async engine from settings."""
    settings = get_settings()
    connect_args = {"check_same_thread": False} if "sqlite" in settings.database_url else {}
    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        connect_args=connect_args,
    )


def get_session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to the given (or shared) engine."""
    return async_sessionmaker(
        engine or get_engine(),
        expire_on_commit=False,
        autoflush=False,
    )
