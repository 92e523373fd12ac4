# agentflow/core/store.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from agentflow.core.logging import get_logger
from agentflow.core.models import Base
from agentflow.core.models.app import DatabaseConfig

logger = get_logger('store')


class Store:
    """
    The relational store of record.

    Owns the async engine and the session factory every engine operation
    runs in. Schema creation is idempotent and guarded so concurrent
    callers in one process only run it once.

    SQLite has no row locks, and an in-memory database shares a single
    connection, so on SQLite sessions are serialized: one session is open
    at a time across all tasks of the process. Postgres sessions run
    concurrently and rely on SELECT ... FOR UPDATE.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.async_engine = create_async_engine(
            self.config.database_url, **self.config.engine_options()
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._session_lock: Optional[asyncio.Lock] = (
            None if self.config.is_postgres else asyncio.Lock()
        )
        self._session_owner: Optional[asyncio.Task] = None

    async def ensure_schema_initialized(self) -> None:
        """Create all agentflow tables if they do not exist yet."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            async with self.async_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._initialized = True
            logger.info('Schema initialized')

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._session_lock is None or self._session_owner is asyncio.current_task():
            async with self.session_factory() as session:
                yield session
            return
        async with self._session_lock:
            self._session_owner = asyncio.current_task()
            try:
                async with self.session_factory() as session:
                    yield session
            finally:
                self._session_owner = None

    async def close_async(self) -> None:
        await self.async_engine.dispose()
        logger.debug('Store engine disposed')
