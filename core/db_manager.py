# core/db_manager.py
import asyncio
from typing import Any

import structlog
from neo4j import (  # type: ignore
    Driver,
    GraphDatabase,
    ManagedTransaction,
    unit_of_work,
)
from neo4j.exceptions import ServiceUnavailable  # type: ignore

from config.settings import GatewaySettings
from core.exceptions import (
    DatabaseConnectionError,
    DatabaseTransactionError,
    handle_database_error,
)

logger = structlog.get_logger(__name__)

SCHEMA_CONSTRAINTS = [
    "CREATE CONSTRAINT novel_id IF NOT EXISTS FOR (n:Novel) REQUIRE n.id IS UNIQUE",
    "CREATE CONSTRAINT character_id IF NOT EXISTS FOR (c:Character) REQUIRE c.id IS UNIQUE",
    "CREATE CONSTRAINT location_id IF NOT EXISTS FOR (l:Location) REQUIRE l.id IS UNIQUE",
    "CREATE CONSTRAINT chapter_composite IF NOT EXISTS FOR (ch:Chapter) REQUIRE (ch.novelId, ch.number) IS UNIQUE",
]

SCHEMA_INDEXES = [
    "CREATE INDEX novel_title IF NOT EXISTS FOR (n:Novel) ON (n.title)",
    "CREATE INDEX character_name IF NOT EXISTS FOR (c:Character) ON (c.name)",
    "CREATE INDEX location_name IF NOT EXISTS FOR (l:Location) ON (l.name)",
    "CREATE INDEX chapter_number IF NOT EXISTS FOR (ch:Chapter) ON (ch.number)",
]


class Neo4jManager:
    """Own one long-lived Neo4j driver and expose async query helpers.

    The driver is synchronous; every call is pushed onto a worker thread with
    `asyncio.to_thread` so queries never block the event loop. The driver is
    created lazily on first use and shared by all requests. Connecting, pool
    acquisition and every transaction carry a timeout from settings.
    """

    def __init__(self, settings: GatewaySettings):
        self.uri = settings.NEO4J_URI
        self.database = settings.NEO4J_DATABASE
        self._auth = (settings.NEO4J_USER, settings.NEO4J_PASSWORD)
        self.connection_timeout = settings.NEO4J_CONNECTION_TIMEOUT
        self.acquisition_timeout = settings.NEO4J_ACQUISITION_TIMEOUT
        self.query_timeout = settings.NEO4J_QUERY_TIMEOUT
        self._query_work = unit_of_work(timeout=self.query_timeout)(self._sync_execute_query_tx)
        self.driver: Driver | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.driver is not None

    async def connect(self) -> None:
        """Create the driver and verify connectivity."""
        if self.driver:
            await self.close()

        try:
            sync_driver = GraphDatabase.driver(
                self.uri,
                auth=self._auth,
                connection_timeout=self.connection_timeout,
                connection_acquisition_timeout=self.acquisition_timeout,
            )
            await asyncio.to_thread(sync_driver.verify_connectivity)
            self.driver = sync_driver
            logger.info(f"Successfully connected to Neo4j at {self.uri}")
        except ServiceUnavailable as e:
            logger.error("Neo4j service unavailable", uri=self.uri, error=str(e))
            self.driver = None
            raise DatabaseConnectionError(
                "Neo4j database is not available",
                details={
                    "uri": self.uri,
                    "original_error": str(e),
                    "suggestion": "Ensure the Neo4j database is running and accessible",
                },
            ) from e
        except Exception as e:
            logger.error(
                "Unexpected error during Neo4j connection",
                uri=self.uri,
                error=str(e),
                exc_info=True,
            )
            self.driver = None
            raise handle_database_error("connection", e, uri=self.uri) from e

    async def close(self) -> None:
        if self.driver:
            try:
                await asyncio.to_thread(self.driver.close)
                logger.info("Neo4j driver closed.")
            except Exception as e:
                logger.error(f"Error while closing Neo4j driver: {e}", exc_info=True)
            finally:
                self.driver = None

    async def _ensure_connected(self) -> None:
        if self.driver is None:
            async with self._connect_lock:
                if self.driver is None:
                    logger.info("Driver is None, attempting to connect.")
                    await self.connect()

        if self.driver is None:
            raise DatabaseConnectionError(
                "Neo4j driver not initialized",
                details={"suggestion": "Call connect() method first to establish database connection"},
            )

    # -------------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # -------------------------------------------------------------------------

    @staticmethod
    def _sync_execute_query_tx(
        tx: ManagedTransaction,
        query: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        result_cursor = tx.run(query, parameters or {})
        return [record.data() for record in result_cursor]

    def _sync_execute_read_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        with self.driver.session(database=self.database) as session:  # type: ignore[union-attr]
            return session.execute_read(self._query_work, query, parameters)

    def _sync_execute_write_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        with self.driver.session(database=self.database) as session:  # type: ignore[union-attr]
            return session.execute_write(self._query_work, query, parameters)

    def _sync_execute_cypher_batch(self, statements: list[tuple[str, dict[str, Any]]]) -> None:
        if not statements:
            return

        with self.driver.session(database=self.database) as session:  # type: ignore[union-attr]
            tx = session.begin_transaction(timeout=self.query_timeout)
            try:
                for query, params in statements:
                    tx.run(query, params)
                tx.commit()
                logger.debug(f"Executed batch of {len(statements)} Cypher statements.")
            except Exception as e:
                logger.error(
                    "Error in Cypher batch execution",
                    batch_size=len(statements),
                    error=str(e),
                    exc_info=True,
                )
                if not tx.closed():
                    tx.rollback()
                raise DatabaseTransactionError(
                    "Batch Cypher execution failed",
                    details={
                        "batch_size": len(statements),
                        "original_error": str(e),
                        "operation": "batch_execution",
                    },
                ) from e

    # -------------------------------------------------------------------------
    # Public async API
    # -------------------------------------------------------------------------

    async def execute_read_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        await self._ensure_connected()
        return await asyncio.to_thread(self._sync_execute_read_query, query, parameters)

    async def execute_write_query(self, query: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        await self._ensure_connected()
        return await asyncio.to_thread(self._sync_execute_write_query, query, parameters)

    async def execute_cypher_batch(self, statements: list[tuple[str, dict[str, Any]]]) -> None:
        await self._ensure_connected()
        await asyncio.to_thread(self._sync_execute_cypher_batch, statements)

    async def create_db_schema(self) -> None:
        """Create constraints and indexes if they do not already exist.

        The batch is attempted first; if it fails (for example because an equivalent
        constraint exists under another name) every statement is retried on its own
        and individual failures are logged and skipped.
        """
        queries = SCHEMA_CONSTRAINTS + SCHEMA_INDEXES
        try:
            await self.execute_cypher_batch([(q, {}) for q in queries])
            logger.info(f"Neo4j schema verified: {len(queries)} constraints and indexes.")
        except DatabaseConnectionError:
            raise
        except Exception as e:
            logger.warning(f"Schema batch failed: {e}. Applying statements individually...")
            for query_text in queries:
                try:
                    await self.execute_write_query(query_text)
                except Exception as individual_e:
                    logger.warning(f"Failed to apply schema operation '{query_text[:80]}': {individual_e}")

    async def health_check(self) -> dict[str, Any]:
        try:
            rows = await self.execute_read_query("RETURN 1 AS ok")
            healthy = bool(rows) and rows[0].get("ok") == 1
            return {"status": "healthy" if healthy else "unhealthy", "uri": self.uri}
        except Exception as e:
            return {"status": "unhealthy", "uri": self.uri, "error": str(e)}
