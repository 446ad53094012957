"""Sandbox child for Postgres scripts.

Run as ``python -m querygate.services.sandbox.postgres_script '<config json>'``.
The script sees ``query(sql, params=None)`` returning rows as dicts.
"""
from __future__ import annotations

import json
import sys
from typing import Any, Callable, List

import psycopg2
from psycopg2.extras import RealDictCursor

from querygate.services.sandbox.child import ConfigError, load_config, run_script, startup_error

REQUIRED_KEYS = ("scriptPath", "host", "port", "user", "password", "database")


class _LazyConnection:
    def __init__(self, config: dict) -> None:
        self._config = config
        self._conn = None

    def query(self, sql: str, params: Any = None) -> List[dict]:
        if self._conn is None:
            self._conn = psycopg2.connect(
                host=self._config["host"],
                port=int(self._config["port"]),
                user=self._config["user"],
                password=self._config["password"],
                dbname=self._config["database"],
                application_name="querygate-sandbox",
            )
            self._conn.autocommit = True
        with self._conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(sql, params)
            if cursor.description is None:
                return []
            return [dict(row) for row in cursor.fetchall()]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()


def _format(arg: Any) -> str:
    if isinstance(arg, (dict, list)):
        return json.dumps(arg, default=str)
    return str(arg)


def _capturing_print(logs: List[Any]) -> Callable[..., None]:
    def _print(*args: Any, **_: Any) -> None:
        logs.append(" ".join(_format(arg) for arg in args))

    return _print


def main(argv: List[str] | None = None) -> int:
    try:
        config = load_config(argv if argv is not None else sys.argv, REQUIRED_KEYS)
    except ConfigError as exc:
        startup_error(str(exc))
    connection = _LazyConnection(config)
    return run_script(
        config,
        ["query"],
        lambda: [connection.query],
        _capturing_print,
        teardown=connection.close,
    )


if __name__ == "__main__":
    sys.exit(main())
