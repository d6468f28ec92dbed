"""PostgreSQL-backed storage for the delay queue.

Each score index is a slice of ``delayq_index`` and each payload store a
slice of ``delayq_payload``, selected by key. Every operation is one
statement (or one transaction for :meth:`PostgresScoreIndex.move`), which
gives the atomicity the queue relies on when producers, consumers and reapers
run in separate processes. The ``asyncpg.Pool`` is either created by
:meth:`PostgresBackend.initialize` or handed in by the host application.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
from collections.abc import AsyncIterator
from typing import Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from delayq.errors import StoreUnavailableError
from delayq.logging import get_logger
from delayq.storage.base import PayloadStore, ScoreIndex, StorageBackend

log = get_logger("delayq.storage.postgres")

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS delayq_index (
    index_key  TEXT             NOT NULL,
    member     TEXT             NOT NULL,
    score      DOUBLE PRECISION NOT NULL,
    PRIMARY KEY (index_key, member)
);

CREATE INDEX IF NOT EXISTS idx_delayq_index_score
    ON delayq_index (index_key, score, member);

CREATE TABLE IF NOT EXISTS delayq_payload (
    store_key  TEXT  NOT NULL,
    member     TEXT  NOT NULL,
    body       TEXT  NOT NULL,
    PRIMARY KEY (store_key, member)
);
"""

_UPSERT_SQL = """
INSERT INTO delayq_index (index_key, member, score)
VALUES ($1, $2, $3)
ON CONFLICT (index_key, member) DO UPDATE SET score = EXCLUDED.score
"""

# Failures that mean "the store is unreachable", as opposed to a bad query.
_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag, e.g. ``"DELETE 1"``."""
    return int(status.split()[-1])


class PostgresBackend(StorageBackend):
    """Storage backend holding all queue data in two PostgreSQL tables."""

    def __init__(
        self,
        dsn: str | None = None,
        *,
        pool: asyncpg.Pool | None = None,  # type: ignore[type-arg]
    ) -> None:
        """Initialise the backend.

        Args:
            dsn: PostgreSQL connection string used by :meth:`initialize`.
            pool: An existing ``asyncpg.Pool`` (shared with the host
                application). Takes precedence over ``dsn``.
        """
        if dsn is None and pool is None:
            raise ValueError("PostgresBackend needs a dsn or a pool")
        self._dsn = dsn
        self._pool = pool
        self._owns_pool = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the connection pool if needed and ensure the schema exists."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(dsn=self._dsn)
            except _UNAVAILABLE_ERRORS as exc:
                log.error("postgres_pool_creation_failed", error=str(exc))
                raise StoreUnavailableError(f"Cannot connect to PostgreSQL: {exc}") from exc
            self._owns_pool = True
            log.info("postgres_pool_created", dsn=(self._dsn or "").split("@")[-1])

        async with self.connection() as conn:
            await conn.execute(_SCHEMA_SQL)
        log.debug("postgres_schema_ensured")

    async def close(self) -> None:
        """Close the pool if this backend created it."""
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            log.info("postgres_pool_closed")
        self._pool = None
        self._owns_pool = False

    @contextlib.asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Acquire a pooled connection, mapping connectivity failures.

        Raises:
            StoreUnavailableError: If the backend is not initialised or the
                database cannot be reached.
        """
        if self._pool is None:
            raise StoreUnavailableError("PostgresBackend is not initialised")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            log.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError(f"PostgreSQL unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def score_index(self, key: str) -> PostgresScoreIndex:
        return PostgresScoreIndex(key, self)

    def payload_store(self, key: str) -> PostgresPayloadStore:
        return PostgresPayloadStore(key, self)


class PostgresScoreIndex(ScoreIndex):
    """Score index stored as ``delayq_index`` rows sharing one ``index_key``."""

    def __init__(self, key: str, backend: PostgresBackend) -> None:
        super().__init__(key)
        self._backend = backend

    async def insert_or_update(self, member: str, score: float) -> None:
        async with self._backend.connection() as conn:
            await conn.execute(_UPSERT_SQL, self._key, member, score)

    async def insert_if_exists(self, member: str, score: float) -> bool:
        async with self._backend.connection() as conn:
            status: str = await conn.execute(
                "UPDATE delayq_index SET score = $3 WHERE index_key = $1 AND member = $2",
                self._key,
                member,
                score,
            )
        return _affected(status) > 0

    async def remove(self, member: str) -> int:
        async with self._backend.connection() as conn:
            status: str = await conn.execute(
                "DELETE FROM delayq_index WHERE index_key = $1 AND member = $2",
                self._key,
                member,
            )
        return _affected(status)

    async def score_of(self, member: str) -> float | None:
        async with self._backend.connection() as conn:
            score = await conn.fetchval(
                "SELECT score FROM delayq_index WHERE index_key = $1 AND member = $2",
                self._key,
                member,
            )
        return None if score is None else float(score)

    async def range_by_score(
        self,
        min_score: float,
        max_score: float,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        async with self._backend.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT member, score FROM delayq_index
                WHERE index_key = $1
                  AND score >= $2
                  AND score <= $3
                ORDER BY score ASC, member ASC
                OFFSET $4
                LIMIT $5
                """,
                self._key,
                min_score,
                max_score,
                offset,
                limit,
            )
        return [(row["member"], float(row["score"])) for row in rows]

    async def cardinality(self) -> int:
        async with self._backend.connection() as conn:
            count = await conn.fetchval(
                "SELECT count(*)::int FROM delayq_index WHERE index_key = $1",
                self._key,
            )
        return int(count or 0)

    async def clear(self) -> None:
        async with self._backend.connection() as conn:
            await conn.execute("DELETE FROM delayq_index WHERE index_key = $1", self._key)

    async def move(
        self,
        member: str,
        target: ScoreIndex,
        score: float,
        *,
        max_score: float | None = None,
    ) -> bool:
        if not isinstance(target, PostgresScoreIndex):
            raise ValueError("move target must be a PostgresScoreIndex")
        async with self._backend.connection() as conn, conn.transaction():
            removed = await conn.fetchval(
                """
                DELETE FROM delayq_index
                WHERE index_key = $1 AND member = $2 AND score <= $3
                RETURNING member
                """,
                self._key,
                member,
                math.inf if max_score is None else max_score,
            )
            if removed is None:
                return False
            await conn.execute(_UPSERT_SQL, target.key, member, score)
        return True


class PostgresPayloadStore(PayloadStore):
    """Payload store stored as ``delayq_payload`` rows sharing one ``store_key``."""

    def __init__(self, key: str, backend: PostgresBackend) -> None:
        super().__init__(key)
        self._backend = backend

    async def set(self, member: str, blob: str) -> None:
        async with self._backend.connection() as conn:
            await conn.execute(
                """
                INSERT INTO delayq_payload (store_key, member, body)
                VALUES ($1, $2, $3)
                ON CONFLICT (store_key, member) DO UPDATE SET body = EXCLUDED.body
                """,
                self._key,
                member,
                blob,
            )

    async def set_if_exists(self, member: str, blob: str) -> bool:
        async with self._backend.connection() as conn:
            status: str = await conn.execute(
                "UPDATE delayq_payload SET body = $3 WHERE store_key = $1 AND member = $2",
                self._key,
                member,
                blob,
            )
        return _affected(status) > 0

    async def get(self, member: str) -> str | None:
        async with self._backend.connection() as conn:
            body: str | None = await conn.fetchval(
                "SELECT body FROM delayq_payload WHERE store_key = $1 AND member = $2",
                self._key,
                member,
            )
        return body

    async def delete(self, member: str) -> bool:
        async with self._backend.connection() as conn:
            status: str = await conn.execute(
                "DELETE FROM delayq_payload WHERE store_key = $1 AND member = $2",
                self._key,
                member,
            )
        return _affected(status) > 0

    async def clear(self) -> None:
        async with self._backend.connection() as conn:
            await conn.execute("DELETE FROM delayq_payload WHERE store_key = $1", self._key)
