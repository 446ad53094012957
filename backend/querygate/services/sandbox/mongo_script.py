"""Sandbox child for MongoDB scripts.

Run as ``python -m querygate.services.sandbox.mongo_script '<config json>'``.
The script sees ``db`` (a pymongo ``Database``) and ``collection(name)``.
"""
from __future__ import annotations

import sys
from typing import Any, Callable, List

from bson import json_util
from pymongo import MongoClient
from pymongo.cursor import Cursor
from pymongo.command_cursor import CommandCursor

from querygate.services.sandbox.child import ConfigError, load_config, run_script, startup_error

REQUIRED_KEYS = ("scriptPath", "mongoUri", "databaseName")


class _LazyClient:
    def __init__(self, config: dict) -> None:
        self._config = config
        self._client: MongoClient | None = None

    def capabilities(self) -> List[Any]:
        self._client = MongoClient(self._config["mongoUri"])
        db = self._client[self._config["databaseName"]]
        return [db, db.get_collection]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def _encode(value: Any) -> Any:
    if isinstance(value, (Cursor, CommandCursor)):
        return list(value)
    try:
        return json_util.default(value)
    except TypeError:
        return str(value)


def _capturing_print(logs: List[Any]) -> Callable[..., None]:
    def _print(*args: Any, **_: Any) -> None:
        logs.append(args[0] if len(args) == 1 else list(args))

    return _print


def main(argv: List[str] | None = None) -> int:
    try:
        config = load_config(argv if argv is not None else sys.argv, REQUIRED_KEYS)
    except ConfigError as exc:
        startup_error(str(exc))
    client = _LazyClient(config)
    return run_script(
        config,
        ["db", "collection"],
        client.capabilities,
        _capturing_print,
        encode=_encode,
        teardown=client.close,
    )


if __name__ == "__main__":
    sys.exit(main())
