"""
Neo4j Graph Client.

Provides async connection management and query execution for the memory
graph: episodic chains, user partitions and semantic relationship edges.
Implements the context manager pattern for safe resource handling.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, TypeVar

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncManagedTransaction
from neo4j.exceptions import (
    AuthError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from agent_memory.core.circuit_breaker import CircuitBreaker
from agent_memory.core.exceptions import (
    InitializationError,
    KnowledgeStoreConnectionError,
    KnowledgeStoreQueryError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_CONNECTION_ERRORS = (ServiceUnavailable, SessionExpired, TransientError, OSError)


class Neo4jClient:
    """
    Async Neo4j client with connection management.

    Usage:
        async with Neo4jClient(uri, user, password) as client:
            result = await client.run_query("MATCH (n) RETURN n LIMIT 10")
    """

    def __init__(
        self,
        uri: str,
        user: str,
        password: str,
        database: str = "neo4j",
        breaker: CircuitBreaker | None = None,
    ) -> None:
        """
        Initialize the Neo4j client.

        Args:
            uri: Neo4j connection URI.
            user: Neo4j username.
            password: Neo4j password.
            database: Target database name.
            breaker: Circuit breaker guarding queries. A default one is created if omitted.
        """
        self._uri = uri
        self._user = user
        self._password = password
        self._database = database
        self._driver: AsyncDriver | None = None
        self._breaker = breaker or CircuitBreaker("neo4j")

    async def connect(self, auto_init_schema: bool = True) -> None:
        """Establish connection to Neo4j database.

        Args:
            auto_init_schema: Initialize schema (constraints/indexes) on first connect.

        Raises:
            InitializationError: If authentication fails.
            KnowledgeStoreConnectionError: If the server cannot be reached.
        """
        if self._driver is not None:
            return

        try:
            self._driver = AsyncGraphDatabase.driver(
                self._uri,
                auth=(self._user, self._password),
            )
            await self._driver.verify_connectivity()
            logger.info("neo4j_connected", uri=self._uri)

            if auto_init_schema:
                await self.initialize_schema()

        except AuthError as e:
            logger.error("neo4j_auth_failed", error=str(e), uri=self._uri)
            await self._discard_driver()
            raise InitializationError(
                "Neo4jClient",
                f"Neo4j authentication failed: {e}",
                {"uri": self._uri},
            ) from e
        except _CONNECTION_ERRORS as e:
            logger.error("neo4j_unavailable", error=str(e), uri=self._uri)
            await self._discard_driver()
            raise KnowledgeStoreConnectionError(
                f"Neo4j service unavailable: {e}",
                {"uri": self._uri, "original_error": str(e)},
            ) from e

    async def _discard_driver(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None

    async def initialize_schema(self) -> None:
        """Initialize schema with constraints and indexes.

        Safe to call multiple times - statements use IF NOT EXISTS.
        """
        logger.info("neo4j_schema_init_starting")

        initialized_count = 0
        for statement in schema_statements():
            async with self.driver.session(database=self._database) as session:
                result = await session.run(statement)
                await result.consume()
            initialized_count += 1

        logger.info("neo4j_schema_init_complete", statements=initialized_count)

    async def close(self) -> None:
        """Close the Neo4j driver connection."""
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("neo4j_disconnected")

    async def __aenter__(self) -> Neo4jClient:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def driver(self) -> AsyncDriver:
        """Get the Neo4j driver, raising if not connected."""
        if self._driver is None:
            raise RuntimeError("Neo4j client not connected. Use 'async with' or call connect().")
        return self._driver

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def run_query(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a read query and return results.

        Args:
            query: Cypher query string.
            parameters: Query parameters.

        Returns:
            List of records as dictionaries.

        Raises:
            CircuitBreakerOpenError: If circuit breaker is open.
            KnowledgeStoreConnectionError: If the server is unreachable.
            KnowledgeStoreQueryError: If query fails.
        """

        async def _read_tx(tx: AsyncManagedTransaction) -> list[dict[str, Any]]:
            result = await tx.run(query, parameters or {})
            return await result.data()

        records = await self._guarded("read", query, lambda session: session.execute_read(_read_tx))
        logger.debug("neo4j_query_executed", query=query[:100], record_count=len(records))
        return records

    async def run_write_query(
        self,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Execute a single-statement write transaction.

        Args:
            query: Cypher query string.
            parameters: Query parameters.

        Returns:
            List of records as dictionaries.
        """

        async def _write_tx(tx: AsyncManagedTransaction) -> list[dict[str, Any]]:
            result = await tx.run(query, parameters or {})
            return await result.data()

        records = await self._guarded("write", query, lambda session: session.execute_write(_write_tx))
        logger.debug("neo4j_write_executed", query=query[:100], record_count=len(records))
        return records

    async def execute_write(
        self,
        work: Callable[[AsyncManagedTransaction], Awaitable[T]],
        label: str = "transaction",
    ) -> T:
        """
        Run a multi-statement unit of work in one write transaction.

        The transaction commits only if `work` returns; any exception
        (including cancellation) rolls it back.

        Args:
            work: Async function receiving the managed transaction.
            label: Name used in logs in place of a query string.
        """
        return await self._guarded("write", label, lambda session: session.execute_write(work))

    async def _guarded(
        self,
        mode: str,
        query: str,
        call: Callable[[Any], Awaitable[T]],
    ) -> T:
        self._breaker.ensure_can_execute()

        try:
            async with self.driver.session(database=self._database) as session:
                result = await call(session)
        except _CONNECTION_ERRORS as e:
            await self._breaker.record_failure()
            logger.error("neo4j_service_unavailable", mode=mode, query=query[:100], error=str(e))
            raise KnowledgeStoreConnectionError(
                f"Neo4j service unavailable: {e}",
                {"query": query[:100], "original_error": str(e)},
            ) from e
        except Neo4jError as e:
            # The server answered, so the breaker is not tripped by bad queries.
            logger.error(
                "neo4j_query_failed",
                mode=mode,
                query=query[:100],
                error=str(e),
                code=getattr(e, "code", None),
            )
            raise KnowledgeStoreQueryError(
                f"Neo4j {mode} failed: {e}",
                {"query": query[:100], "code": getattr(e, "code", None)},
            ) from e

        await self._breaker.record_success()
        return result


# =============================================================================
# Schema Initialization
# =============================================================================

SCHEMA_CONSTRAINTS = """
// User partition
CREATE CONSTRAINT user_id IF NOT EXISTS FOR (u:User) REQUIRE u.id IS UNIQUE;

// Episodic memory nodes
CREATE CONSTRAINT episodic_memory_id IF NOT EXISTS FOR (m:EpisodicMemory) REQUIRE m.id IS UNIQUE;
CREATE INDEX episodic_memory_user IF NOT EXISTS FOR (m:EpisodicMemory) ON (m.userId);
CREATE INDEX episodic_memory_timestamp IF NOT EXISTS FOR (m:EpisodicMemory) ON (m.timestamp);
CREATE INDEX episodic_memory_session IF NOT EXISTS FOR (m:EpisodicMemory) ON (m.userId, m.sessionId);

// Semantic memory nodes
CREATE CONSTRAINT semantic_memory_id IF NOT EXISTS FOR (s:SemanticMemory) REQUIRE s.id IS UNIQUE;
CREATE CONSTRAINT semantic_memory_key IF NOT EXISTS FOR (s:SemanticMemory) REQUIRE s.conceptKey IS UNIQUE;
CREATE INDEX semantic_memory_user IF NOT EXISTS FOR (s:SemanticMemory) ON (s.userId);

// Session goals
CREATE CONSTRAINT goal_id IF NOT EXISTS FOR (g:Goal) REQUIRE g.id IS UNIQUE;
CREATE INDEX goal_session IF NOT EXISTS FOR (g:Goal) ON (g.userId, g.sessionId);
"""


def schema_statements() -> list[str]:
    """Split SCHEMA_CONSTRAINTS into executable statements, dropping comments."""
    statements = []
    for chunk in SCHEMA_CONSTRAINTS.strip().split(";"):
        lines = [line for line in chunk.strip().splitlines() if not line.strip().startswith("//")]
        statement = "\n".join(lines).strip()
        if statement:
            statements.append(statement)
    return statements
