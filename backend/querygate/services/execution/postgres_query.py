from __future__ import annotations

"""backend/querygate/services/execution/postgres_query.py

Direct executor for Postgres QUERY submissions.

Each call opens a single-use psycopg2 connection pool, issues the literal
query text in autocommit mode, and races the native call against the
configured timeout. The pool is always torn down, whatever the outcome.
Every failure is routed through the error classifier before propagating.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict

from psycopg2.extras import RealDictCursor
from psycopg2.pool import SimpleConnectionPool

from querygate.services.diagnostics.error_classifier import classify_postgres_error
from querygate.services.execution.base import (
    DEFAULT_TIMEOUT_SECONDS,
    run_with_timeout,
    to_jsonable,
)


@dataclass
class PostgresConnection:
    host: str
    port: int
    username: str
    password: str
    database: str


def _open_pool(
    connection: PostgresConnection,
    *,
    timeout_seconds: float,
    connect_timeout_seconds: int,
    sslmode: str,
) -> SimpleConnectionPool:
    statement_timeout_ms = int(timeout_seconds * 1000)
    return SimpleConnectionPool(
        1,
        1,
        host=connection.host,
        port=connection.port,
        user=connection.username,
        password=connection.password,
        dbname=connection.database,
        connect_timeout=connect_timeout_seconds,
        sslmode=sslmode,
        options=f"-c statement_timeout={statement_timeout_ms}",
        application_name="querygate",
    )


def execute_postgres_query(
    connection: PostgresConnection,
    query_text: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    connect_timeout_seconds: int = 10,
    sslmode: str = "prefer",
    pool_factory: Callable[..., SimpleConnectionPool] = _open_pool,
) -> Dict[str, Any]:
    """Run one statement and return ``{"rows": [...], "rowCount": n}``."""
    pool = None
    conn = None
    try:
        pool = pool_factory(
            connection,
            timeout_seconds=timeout_seconds,
            connect_timeout_seconds=connect_timeout_seconds,
            sslmode=sslmode,
        )
        conn = pool.getconn()
        conn.autocommit = True

        def _run() -> Dict[str, Any]:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(query_text)
                rows = cursor.fetchall() if cursor.description else []
                row_count = cursor.rowcount if cursor.rowcount >= 0 else None
            return {"rows": to_jsonable([dict(row) for row in rows]), "rowCount": row_count}

        return run_with_timeout(_run, timeout_seconds, on_timeout=conn.cancel)
    except Exception as exc:  # noqa: BLE001
        raise classify_postgres_error(exc) from exc
    finally:
        if pool is not None:
            pool.closeall()
