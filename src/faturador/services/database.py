"""PostgreSQL gateway with a bounded connection pool and transient-error retry.

Every statement or unit of work borrows one connection from a
``ThreadedConnectionPool``, runs, commits, and hands the connection back.
Connection-level failures (reset, lost connection, timeout, unreachable
host, refused) are retried with exponential backoff per ``DB_TRANSIENT``;
anything else propagates on the first attempt.
"""

from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

import psycopg2
import psycopg2.extras
import psycopg2.pool

from faturador.services.exceptions import TransientConnectionError, TransientKind
from faturador.services.retry import DB_TRANSIENT, RetryPolicy, retry_call

logger = logging.getLogger(__name__)

T = TypeVar("T")

Params = tuple | dict | None

_ERRNO_KINDS = {
    errno.ECONNRESET: TransientKind.RESET,
    errno.EPIPE: TransientKind.CONNECTION_LOST,
    errno.ETIMEDOUT: TransientKind.TIMEOUT,
    errno.EHOSTUNREACH: TransientKind.HOST_UNREACHABLE,
    errno.ENETUNREACH: TransientKind.HOST_UNREACHABLE,
    errno.ECONNREFUSED: TransientKind.REFUSED,
}

# SQLSTATE class 08 (connection exception) and server shutdown codes
_PGCODE_KINDS = {
    "08000": TransientKind.CONNECTION_LOST,
    "08003": TransientKind.CONNECTION_LOST,
    "08006": TransientKind.CONNECTION_LOST,
    "08001": TransientKind.REFUSED,
    "08004": TransientKind.REFUSED,
    "57P01": TransientKind.CONNECTION_LOST,
    "57P02": TransientKind.CONNECTION_LOST,
    "57P03": TransientKind.REFUSED,
}

# libpq reports client-side connection failures as text only
_MESSAGE_KINDS = (
    ("connection reset", TransientKind.RESET),
    ("server closed the connection unexpectedly", TransientKind.CONNECTION_LOST),
    ("connection already closed", TransientKind.CONNECTION_LOST),
    ("no connection to the server", TransientKind.CONNECTION_LOST),
    ("terminating connection", TransientKind.CONNECTION_LOST),
    ("could not receive data from server", TransientKind.CONNECTION_LOST),
    ("ssl syscall error", TransientKind.CONNECTION_LOST),
    ("timeout expired", TransientKind.TIMEOUT),
    ("timed out", TransientKind.TIMEOUT),
    ("could not translate host name", TransientKind.HOST_UNREACHABLE),
    ("no route to host", TransientKind.HOST_UNREACHABLE),
    ("network is unreachable", TransientKind.HOST_UNREACHABLE),
    ("connection refused", TransientKind.REFUSED),
)


def classify_transient(exc: BaseException) -> TransientKind | None:
    """Return the transient-connection kind of *exc*, or None if it is permanent."""
    if isinstance(exc, socket.gaierror):
        return TransientKind.HOST_UNREACHABLE
    if isinstance(exc, TimeoutError):
        return TransientKind.TIMEOUT
    if isinstance(exc, OSError) and not isinstance(exc, psycopg2.Error):
        return _ERRNO_KINDS.get(exc.errno)  # type: ignore[arg-type]
    if not isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return None
    pgcode = getattr(exc, "pgcode", None)
    if pgcode in _PGCODE_KINDS:
        return _PGCODE_KINDS[pgcode]
    message = str(exc).lower()
    for fragment, kind in _MESSAGE_KINDS:
        if fragment in message:
            return kind
    return None


class Database:
    """Retrying executor for statements and transactions.

    Usage:
        db = Database(settings.database_url, maxconn=10)
        rows = db.execute("SELECT * FROM notas_fiscais WHERE id = %s", (invoice_id,))

        def work(cur):
            cur.execute("UPDATE ...", (...))
            cur.execute("INSERT ...", (...))
        db.transaction(work)
    """

    def __init__(
        self,
        dsn: str,
        *,
        minconn: int = 1,
        maxconn: int = 10,
        connect_timeout: int = 30,
        policy: RetryPolicy = DB_TRANSIENT,
        sleep_func: Callable[[float], object] = time.sleep,
        pool: Any = None,
    ) -> None:
        self._dsn = dsn
        self._minconn = minconn
        self._maxconn = maxconn
        self._connect_timeout = connect_timeout
        self._policy = policy
        self._sleep = sleep_func
        self._pool = pool
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> Any:
        """Create the connection pool on first use."""
        with self._pool_lock:
            if self._pool is None:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._minconn,
                    maxconn=self._maxconn,
                    dsn=self._dsn,
                    connect_timeout=self._connect_timeout,
                )
                logger.info("Connection pool created (max %d connections)", self._maxconn)
            return self._pool

    def _attempt(self, work: Callable[[Any], T]) -> T:
        """Run *work* on one borrowed connection; commit, or roll back on error."""
        pool = self._get_pool()
        conn = pool.getconn()
        broken = False
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                result = work(cur)
            conn.commit()
            return result
        except Exception as exc:
            broken = classify_transient(exc) is not None
            try:
                conn.rollback()
            except psycopg2.Error:
                logger.warning("Rollback failed; discarding connection", exc_info=True)
                broken = True
            raise
        finally:
            try:
                pool.putconn(conn, close=broken)
            except Exception:
                logger.warning("Failed to release connection to the pool", exc_info=True)

    def run(self, work: Callable[[Any], T]) -> T:
        """Run *work(cursor)* with transient-connection retry.

        Raises TransientConnectionError once attempts are exhausted; permanent
        errors propagate unchanged on the first failure.
        """
        try:
            return retry_call(
                lambda: self._attempt(work),
                self._policy,
                sleep_func=self._sleep,
                should_retry=lambda exc: classify_transient(exc) is not None,
            )
        except self._policy.retryable_exceptions as exc:
            kind = classify_transient(exc)
            if kind is None:
                raise
            logger.error(
                "Database unavailable after %d attempts (%s)", self._policy.max_attempts, kind.value
            )
            raise TransientConnectionError(f"Banco de dados indisponível: {exc}", kind) from exc

    def transaction(self, work: Callable[[Any], T]) -> T:
        """Run *work(cursor)* as one atomic unit of work."""
        return self.run(work)

    def execute(self, query: str, params: Params = None) -> list[dict[str, Any]]:
        """Execute query, return list of row dicts. Empty list if no results."""

        def work(cur: Any) -> list[dict[str, Any]]:
            cur.execute(query, params)
            if cur.description:
                return [dict(row) for row in cur.fetchall()]
            return []

        return self.run(work)

    def execute_single(self, query: str, params: Params = None) -> dict[str, Any] | None:
        """Execute query, return first row or None."""
        results = self.execute(query, params)
        return results[0] if results else None

    def execute_scalar(self, query: str, params: Params = None) -> Any:
        """Execute query, return first value of first row or None."""
        row = self.execute_single(query, params)
        if not row:
            return None
        return next(iter(row.values()))

    def execute_update(self, query: str, params: Params = None) -> int:
        """Execute an UPDATE/DELETE, return the number of affected rows."""

        def work(cur: Any) -> int:
            cur.execute(query, params)
            return cur.rowcount

        return self.run(work)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            return self.execute_scalar("SELECT 1 AS ok") == 1
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False

    def close(self) -> None:
        """Close every pooled connection."""
        with self._pool_lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
