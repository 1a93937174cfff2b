"""Async database handle.

The service only needs a connection pool it can ping; schema and queries live
elsewhere.
"""

import time
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from gas_relayer.config import Settings
from gas_relayer.errors import StartupError, StartupErrorKind
from gas_relayer.obs.logger import log_event
from gas_relayer.obs.metrics import MetricRegistry


def to_async_url(url: str) -> str:
    """Point plain postgres URLs at the asyncpg driver."""
    for scheme in ("postgres://", "postgresql://"):
        if url.startswith(scheme):
            return "postgresql+asyncpg://" + url[len(scheme):]
    return url


class Database:
    def __init__(self, engine: AsyncEngine, metrics: Optional[MetricRegistry] = None):
        self.engine = engine
        self.metrics = metrics

    @classmethod
    async def connect(cls, settings: Settings, metrics: Optional[MetricRegistry] = None) -> "Database":
        """Build the pool and make sure the database answers before serving."""
        try:
            engine = create_async_engine(
                to_async_url(settings.DATABASE_URL),
                pool_size=settings.MAX_DB_CONNECTION,
            )
        except Exception as e:
            raise StartupError(StartupErrorKind.DATABASE, f"Couldn't create DB pool: {e}") from e

        db = cls(engine, metrics)
        try:
            await db.ping()
        except Exception as e:
            await db.dispose()
            raise StartupError(StartupErrorKind.DATABASE, f"Database unreachable: {e}") from e
        log_event("db_connected", max_connections=settings.MAX_DB_CONNECTION)
        return db

    async def ping(self) -> None:
        start = time.monotonic()
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            if self.metrics is not None:
                self.metrics.record_db_query(time.monotonic() - start, success=False)
            raise
        if self.metrics is not None:
            self.metrics.record_db_query(time.monotonic() - start, success=True)

    def pool_status(self) -> Dict[str, int]:
        pool = self.engine.pool
        status: Dict[str, int] = {}
        for key in ("size", "checkedout", "checkedin", "overflow"):
            fn = getattr(pool, key, None)
            if callable(fn):
                status[key] = int(fn())
        return status

    async def dispose(self) -> None:
        await self.engine.dispose()
