"""Database engine and tenant-scoped session management."""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from splitledger.webhooks.exceptions import InvalidTenantScopeError

TENANT_SCHEMA_PATTERN = re.compile(r"^tenant_[A-Za-z0-9]+$")


def create_engine(database_url: str) -> AsyncEngine:
    """Create the shared async engine."""
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
    )


def get_tenant_schema(tenant_id: str) -> str:
    """Map a tenant id to its schema name (``tenant_<alphanumerics>``)."""
    cleaned = re.sub(r"[^a-zA-Z0-9]", "", tenant_id)
    if not cleaned:
        raise InvalidTenantScopeError(tenant_id)
    return f"tenant_{cleaned}"


def validate_tenant_schema(tenant_schema: str) -> str:
    """Reject anything that is not a well-formed tenant schema name."""
    if not TENANT_SCHEMA_PATTERN.match(tenant_schema):
        raise InvalidTenantScopeError(tenant_schema)
    return tenant_schema


class TenantSessionFactory:
    """Opens sessions whose unqualified tables resolve inside a tenant schema."""

    def __init__(self, engine: AsyncEngine, schema_isolation: bool = True):
        """
        Initialize the factory.

        Args:
            engine: Shared async engine
            schema_isolation: Translate table names into the tenant schema.
                Single-schema databases (SQLite in tests) turn this off.
        """
        self._engine = engine
        self._schema_isolation = schema_isolation

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def session(self, tenant_schema: str) -> AsyncIterator[AsyncSession]:
        """Yield a session bound to ``tenant_schema``."""
        validate_tenant_schema(tenant_schema)

        bind = self._engine
        if self._schema_isolation:
            bind = self._engine.execution_options(
                schema_translate_map={None: tenant_schema},
            )

        async with AsyncSession(bind=bind, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self._engine.dispose()
