"""Database singleton: async PostgreSQL engine via SQLAlchemy + asyncpg."""

import logging
from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine. Call connect() once at startup."""

    def __init__(self):
        self._engine: Optional[AsyncEngine] = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected")
        return self._engine

    # Used by: main.py lifespan (startup), cli.py
    async def connect(self, database_url: str, statement_timeout_ms: int = 30000) -> None:
        if self._engine is not None:
            logger.warning("Database already connected")
            return

        logger.info("Connecting to database...")

        # The server enforces the timeout; nothing in the core cancels statements itself
        self._engine = create_async_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            connect_args={"server_settings": {"statement_timeout": str(statement_timeout_ms)}},
        )

        logger.info("Database connected")

    # Used by: main.py lifespan (shutdown), cli.py
    async def disconnect(self) -> None:
        if self._engine is None:
            return

        logger.info("Disconnecting from database...")
        await self._engine.dispose()
        self._engine = None

    # Used by: SqlEventStore.transaction()
    def connection(self) -> AsyncConnection:
        """Use as: async with db.connection() as conn: ..."""
        return self.engine.connect()


_db: Optional[DatabaseManager] = None


def get_database() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager()
    return _db
