from __future__ import annotations

"""backend/querygate/services/execution/base.py

Shared utilities for the direct (non-sandboxed) query executors.

This module provides:

- ExecutionSettings: per-execution runtime configuration (timeouts, driver
  connection defaults, sandbox environment policy), built once from
  Settings and handed to every executor at construction time
- ExecutionTimeout: raised when the native call loses the timeout race
- run_with_timeout: runs a blocking driver call on a worker thread and
  races it against a wall-clock timer
- to_jsonable: turn driver results into JSON-storable snapshots
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, List, TypeVar

from fastapi.encoders import jsonable_encoder

from querygate.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 30


@dataclass
class ExecutionSettings:
    """Runtime settings shared by executors and the sandbox runner."""

    query_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    sandbox_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    postgres_connect_timeout_seconds: int = 10
    postgres_sslmode: str = "prefer"
    mongo_connect_timeout_ms: int = 10000
    mongo_server_selection_timeout_ms: int = 10000
    sandbox_python: str | None = None
    sandbox_env_passthrough: List[str] = field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "TZ"]
    )
    host_secrets: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExecutionSettings":
        return cls(
            query_timeout_seconds=settings.query_timeout_seconds,
            sandbox_timeout_seconds=settings.sandbox_timeout_seconds,
            postgres_connect_timeout_seconds=settings.postgres_connect_timeout_seconds,
            postgres_sslmode=settings.postgres_sslmode,
            mongo_connect_timeout_ms=settings.mongo_connect_timeout_ms,
            mongo_server_selection_timeout_ms=settings.mongo_server_selection_timeout_ms,
            sandbox_python=settings.sandbox_python,
            sandbox_env_passthrough=list(settings.sandbox_env_passthrough),
            host_secrets=[value for value in (settings.encryption_key, settings.jwt_secret) if value],
        )


class ExecutionTimeout(TimeoutError):
    """The native call did not settle before the timeout timer fired."""


def format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


def run_with_timeout(
    fn: Callable[[], T],
    timeout_seconds: float,
    *,
    on_timeout: Callable[[], None] | None = None,
) -> T:
    """Race ``fn`` against a timer; whichever settles first wins.

    On timeout ``on_timeout`` is invoked (e.g. to cancel the running
    statement) and ExecutionTimeout is raised. The worker thread is not
    joined: a write the target already committed is not retracted.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="querygate-exec")
    future = pool.submit(fn)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        logger.warning("Execution exceeded %ss; abandoning native call", timeout_seconds)
        if on_timeout is not None:
            try:
                on_timeout()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Timeout cancellation hook failed: %s", exc)
        raise ExecutionTimeout(
            f"Query execution timed out after {format_seconds(timeout_seconds)} seconds"
        ) from None
    finally:
        pool.shutdown(wait=False)


def to_jsonable(value: Any) -> Any:
    """JSON-storable snapshot of a driver result (datetimes, decimals, UUIDs...)."""
    return jsonable_encoder(value)
