"""Neo4j connection pool with scoped sessions and typed record decoding."""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from loguru import logger
from neo4j import GraphDatabase, Query
from neo4j.exceptions import (
    AuthError,
    DriverError,
    Neo4jError,
    ServiceUnavailable,
    SessionExpired,
)

from config.settings import Settings, settings as default_settings
from core.errors import GraphQueryError, StoreConnectionError, StoreTimeoutError
from .records import decode_value

STORE_NAME = "neo4j"


class Neo4jConnection:
    """
    Owns the Neo4j driver and its connection pool.

    Lifecycle is explicit: ``open()`` at startup, ``session()`` or ``run()``
    per call (the session is released on every exit path), ``close()`` at
    shutdown. Also usable as a context manager.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.logger = logger.bind(name=self.__class__.__name__)
        self.settings = config or default_settings
        self._driver = None

    @property
    def is_open(self) -> bool:
        return self._driver is not None

    def open(self) -> "Neo4jConnection":
        """Create the driver (the pool connects lazily on first use)."""
        if self._driver is not None:
            return self
        self._driver = GraphDatabase.driver(
            self.settings.neo4j_uri,
            auth=(self.settings.neo4j_user, self.settings.neo4j_password),
            max_connection_pool_size=self.settings.neo4j_max_pool_size,
            connection_timeout=self.settings.neo4j_connection_timeout,
            connection_acquisition_timeout=self.settings.neo4j_connection_timeout,
        )
        self.logger.info(f"Neo4j driver created for {self.settings.neo4j_uri}")
        return self

    def close(self):
        """Close the driver and every pooled connection."""
        if self._driver is not None:
            self._driver.close()
            self._driver = None
            self.logger.info("Neo4j connection closed")

    def __enter__(self) -> "Neo4jConnection":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def verify(self):
        """Check connectivity, raising StoreConnectionError on failure."""
        if self._driver is None:
            raise StoreConnectionError(STORE_NAME, "driver not initialized, call open() first")
        try:
            self._driver.verify_connectivity()
        except (DriverError, Neo4jError) as e:
            raise self._translate(e) from e

    @contextmanager
    def session(self) -> Iterator[Any]:
        """Scoped session from the pool."""
        if self._driver is None:
            raise StoreConnectionError(STORE_NAME, "driver not initialized, call open() first")
        with self._driver.session(database=self.settings.neo4j_database) as session:
            yield session

    def run(
        self,
        query: str,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """
        Run a parameterized Cypher query and return decoded records.

        Args:
            query: Cypher text
            parameters: Query parameters
            timeout: Transaction timeout in seconds (defaults to settings)

        Returns:
            One dict per record, mapping keys to tagged graph values
        """
        timeout = self.settings.neo4j_query_timeout if timeout is None else timeout
        try:
            with self.session() as session:
                result = session.run(Query(query, timeout=timeout), parameters or {})
                return [
                    {key: decode_value(record[key]) for key in record.keys()}
                    for record in result
                ]
        except (DriverError, Neo4jError) as e:
            raise self._translate(e) from e

    @staticmethod
    def _translate(error: Exception) -> Exception:
        """Map driver exceptions onto the core error taxonomy."""
        code = getattr(error, "code", None) or ""
        message = str(error) or error.__class__.__name__
        if isinstance(error, AuthError):
            return StoreConnectionError(STORE_NAME, f"authentication failed: {message}")
        if "TimedOut" in code or "failed to obtain a connection" in message:
            return StoreTimeoutError(STORE_NAME, message)
        if isinstance(error, (ServiceUnavailable, SessionExpired)):
            return StoreConnectionError(STORE_NAME, message)
        if isinstance(error, Neo4jError):
            return GraphQueryError(message)
        return StoreConnectionError(STORE_NAME, message)
