"""
PostgreSQL client with connection pooling and explicit transactions.

Uses psycopg2 with ThreadedConnectionPool. Outside a transaction every
statement runs on its own pooled connection and commits immediately. Inside
`transaction()` every statement issued from the same context (thread or task)
joins one connection and commits or rolls back together; this is the
serialization point the lifecycle engine relies on.

Connection-level failures surface as TransientStoreFailure so callers can
retry with backoff. Constraint violations (psycopg2.IntegrityError) pass
through untouched for the stores to interpret.
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

from core.errors import TransientStoreFailure

logger = logging.getLogger(__name__)

# Global JSONB registration flag
_jsonb_registered = False

# (database_url, connection) of the transaction open in this context
_active_transaction: ContextVar[tuple[str, Any] | None] = ContextVar(
    "active_pg_transaction", default=None
)

_TRANSIENT_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError)


class PostgresClient:
    """
    PostgreSQL client with contextvar-scoped transactions.

    Usage:
        db = PostgresClient(database_url)

        # Autocommit per statement
        rows = db.execute("SELECT * FROM requests WHERE status = %s", ("new",))

        # Several statements, one commit
        with db.transaction():
            row = db.execute_single("SELECT * FROM engagements WHERE id = %s FOR UPDATE", (eid,))
            db.execute_returning("UPDATE engagements SET ... RETURNING *", (...))
    """

    # Class-level connection pools shared across instances
    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str):
        self._database_url = database_url
        self._ensure_connection_pool()

    def _ensure_connection_pool(self) -> None:
        """Create connection pool if it doesn't exist."""
        with self._pools_lock:
            if self._database_url not in self._connection_pools:
                try:
                    pool = psycopg2.pool.ThreadedConnectionPool(
                        minconn=2,
                        maxconn=20,
                        dsn=self._database_url,
                        connect_timeout=30,
                    )
                except psycopg2.OperationalError as e:
                    logger.error(f"Could not create connection pool: {e}")
                    raise TransientStoreFailure(f"Database unreachable: {e}")

                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    _jsonb_registered = True

                self._connection_pools[self._database_url] = pool
                logger.info("Connection pool created")

    @contextmanager
    def get_connection(self):
        """Borrow a pooled connection for the duration of the block."""
        if self._database_url not in self._connection_pools:
            self._ensure_connection_pool()

        pool = self._connection_pools[self._database_url]
        conn = None

        try:
            try:
                conn = pool.getconn()
            except _TRANSIENT_ERRORS as e:
                raise TransientStoreFailure(f"Could not get connection from pool: {e}")
            if conn is None:
                raise TransientStoreFailure("Could not get connection from pool")

            yield conn

        finally:
            if conn:
                pool.putconn(conn)

    @contextmanager
    def transaction(self):
        """
        Run every statement in the block on one connection, committed once.

        Nested calls join the outer transaction. Any exception rolls back the
        whole block and propagates.
        """
        active = _active_transaction.get()
        if active is not None and active[0] == self._database_url:
            yield active[1]
            return

        with self.get_connection() as conn:
            token = _active_transaction.set((self._database_url, conn))
            try:
                yield conn
                conn.commit()
            except _TRANSIENT_ERRORS as e:
                self._safe_rollback(conn)
                raise TransientStoreFailure(f"Transaction failed: {e}")
            except BaseException:
                self._safe_rollback(conn)
                raise
            finally:
                _active_transaction.reset(token)

    @property
    def in_transaction(self) -> bool:
        active = _active_transaction.get()
        return active is not None and active[0] == self._database_url

    def _safe_rollback(self, conn) -> None:
        try:
            conn.rollback()
        except _TRANSIENT_ERRORS:
            logger.warning("Rollback failed on a broken connection")

    def _convert_params(self, params: Tuple | Dict | None) -> Tuple | Dict | None:
        """Convert UUID objects to strings."""
        if params is None:
            return None

        def convert(value: Any) -> Any:
            if isinstance(value, UUID):
                return str(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, tuple):
                return tuple(convert(v) for v in value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(params)

    def _run(self, query: str, params: Tuple | Dict | None, cursor_factory=None) -> List[Any]:
        """Execute on the active transaction, or on a fresh autocommitted connection."""
        params = self._convert_params(params)

        active = _active_transaction.get()
        if active is not None and active[0] == self._database_url:
            with active[1].cursor(cursor_factory=cursor_factory) as cur:
                cur.execute(query, params)
                return cur.fetchall() if cur.description else []

        with self.get_connection() as conn:
            try:
                with conn.cursor(cursor_factory=cursor_factory) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall() if cur.description else []
                conn.commit()
                return rows
            except _TRANSIENT_ERRORS as e:
                self._safe_rollback(conn)
                raise TransientStoreFailure(f"Query failed: {e}")
            except Exception:
                self._safe_rollback(conn)
                raise

    def execute(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""
        rows = self._run(query, params, psycopg2.extras.RealDictCursor)
        return [dict(row) for row in rows]

    def execute_single(self, query: str, params: Tuple | Dict | None = None) -> Dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Tuple | Dict | None = None) -> Any:
        """Execute query, return first value of first row or None."""
        rows = self._run(query, params)
        return rows[0][0] if rows else None

    def execute_returning(self, query: str, params: Tuple | Dict | None = None) -> List[Dict[str, Any]]:
        """Execute INSERT/UPDATE with RETURNING, return results."""
        return self.execute(query, params)

    def close(self) -> None:
        """Close connection pool."""
        with self._pools_lock:
            if self._database_url in self._connection_pools:
                self._connection_pools[self._database_url].closeall()
                del self._connection_pools[self._database_url]

    @classmethod
    def close_all_pools(cls) -> None:
        """Close all connection pools."""
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
