# src/table_importer/connectors/postgresql.py
import logging
from typing import Any, Dict, List, Optional, Sequence
import psycopg2
from psycopg2.extras import RealDictCursor

from ..config import SourceConfig
from ..errors import ConnectionError, QueryError

logger = logging.getLogger(__name__)


def _connection_suggestions(error_msg: str, host: str, port: int, database: str) -> List[str]:
    suggestions = []
    if "password authentication failed" in error_msg:
        suggestions.append("Check username and password in your config or .env file.")
    elif "could not connect to server" in error_msg or "Connection refused" in error_msg:
        suggestions.append("Check that the host and port are correct.")
        suggestions.append(f"Verify the server is running and accessible: pg_isready -h {host} -p {port}")
        suggestions.append("Check firewall rules / cluster security groups.")
    elif "database" in error_msg and "does not exist" in error_msg:
        suggestions.append(f"Ensure the database '{database}' exists.")
    elif "timeout" in error_msg:
        suggestions.append("The server did not answer in time; check network access to the cluster.")
    else:
        suggestions.append("Check the connection settings in the 'source' section.")
    return suggestions


class QueryExecutor:
    """
    Runs single parameterized statements against the source store
    (PostgreSQL or Redshift, both through psycopg2).

    Every call opens its own connection and closes it again before
    returning, whatever happened. There is no retry here; retry policy
    belongs to the import cycle.
    """

    def __init__(self, config: SourceConfig):
        self.host = config.host
        self.port = config.port
        self.database = config.database
        self.user = config.user
        self.password = config.password
        self.connect_timeout = config.connect_timeout
        self.connection_string = (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password} connect_timeout={self.connect_timeout}"
        )
        logger.debug(f"QueryExecutor initialized for {self.host}:{self.port}/{self.database}")

    def _connect(self):
        try:
            return psycopg2.connect(self.connection_string)
        except psycopg2.Error as e:
            raise ConnectionError(f"Could not connect to {self.host}:{self.port}/{self.database}: {str(e).strip()}") from e

    def execute(self, query: str, parameters: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        """
        Execute one statement.

        Returns:
            The result rows as dicts, or an empty list for statements without a result set.

        Raises:
            QueryError: The statement failed (ConnectionError if the connection could not be opened).
        """
        conn = self._connect()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query, parameters)
                rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
            conn.commit()
            return rows
        except psycopg2.Error as e:
            # closing without commit discards the open transaction
            raise QueryError(str(e).strip()) from e
        finally:
            conn.close()

    def test_connection(self) -> bool:
        """Open and close one connection, raising ConnectionError with suggestions on failure."""
        try:
            conn = psycopg2.connect(self.connection_string)
            conn.close()
            return True
        except psycopg2.OperationalError as e:
            error_msg = str(e).strip()
            suggestion_str = "\n".join(
                f"  - {s}" for s in _connection_suggestions(error_msg, self.host, self.port, self.database)
            )
            raise ConnectionError(
                f"Source connection failed: {error_msg}\n\nSuggestions:\n{suggestion_str}"
            ) from e
