"""Retrieval configuration lookup with safe defaults."""

import logging
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coach_rag.core.config import Settings
from coach_rag.core.exceptions import ConfigurationError, RetrievalUnavailable
from coach_rag.knowledge.models import RetrievalConfiguration
from coach_rag.models.knowledge import RetrievalConfigurationRow

logger = logging.getLogger(__name__)


class ConfigStore(Protocol):
    """Source of the admin-managed retrieval configuration."""

    async def get_config(self, tenant_id: str | None) -> RetrievalConfiguration | None:
        """Configuration for the tenant, or None when no row exists.

        Raises:
            RetrievalUnavailable: If the store cannot be reached.
            ConfigurationError: If the stored values are out of bounds.
        """
        ...


class StaticConfigStore:
    """Serves fixed configurations, keyed by tenant (None for the default)."""

    def __init__(
        self,
        config: RetrievalConfiguration | None = None,
        per_tenant: dict[str, RetrievalConfiguration] | None = None,
    ) -> None:
        self._config = config
        self._per_tenant = dict(per_tenant or {})

    async def get_config(self, tenant_id: str | None) -> RetrievalConfiguration | None:
        if tenant_id is not None and tenant_id in self._per_tenant:
            return self._per_tenant[tenant_id]
        return self._config


class SqlConfigStore:
    """Reads the retrieval_configurations table.

    A tenant without its own row uses the global row (tenant_id NULL).
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_config(self, tenant_id: str | None) -> RetrievalConfiguration | None:
        try:
            async with self._session_factory() as session:
                row = None
                if tenant_id is not None:
                    row = await session.scalar(
                        select(RetrievalConfigurationRow).where(
                            RetrievalConfigurationRow.tenant_id == tenant_id
                        )
                    )
                if row is None:
                    row = await session.scalar(
                        select(RetrievalConfigurationRow).where(
                            RetrievalConfigurationRow.tenant_id.is_(None)
                        )
                    )
        except SQLAlchemyError as e:
            raise RetrievalUnavailable(f"Configuration store unreachable: {e}") from e

        if row is None:
            return None
        return _row_to_config(row)


def _row_to_config(row: RetrievalConfigurationRow) -> RetrievalConfiguration:
    try:
        return RetrievalConfiguration(
            similarity_threshold=row.similarity_threshold,
            high_relevance_threshold=row.high_relevance_threshold,
            max_chunks=row.max_chunks,
            per_source_cap=row.per_source_cap,
            category_priority=row.category_priority,
            strict_muscle_priority=row.strict_muscle_priority,
            use_knowledge_base=row.use_knowledge_base,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid retrieval configuration row {row.id}: {e}") from e


async def load_configuration(
    store: ConfigStore,
    tenant_id: str | None,
    settings: Settings,
) -> tuple[RetrievalConfiguration, bool]:
    """Read the configuration once for a retrieval call.

    Returns:
        The configuration and whether defaults had to be used.
    """
    try:
        config = await store.get_config(tenant_id)
    except (RetrievalUnavailable, ConfigurationError) as e:
        logger.warning(f"Retrieval configuration unavailable, using defaults: {e}")
        return RetrievalConfiguration.from_settings(settings), True

    if config is None:
        logger.info(f"No retrieval configuration for tenant {tenant_id}, using defaults")
        return RetrievalConfiguration.from_settings(settings), True
    return config, False
