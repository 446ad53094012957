from __future__ import annotations

"""backend/querygate/services/sandbox/child.py

Helpers shared by the sandbox child entry points (``postgres_script`` and
``mongo_script``).

A user script is a Python function body. It is compiled into a function
whose parameters are the capabilities the child exposes (``query`` or
``db`` / ``collection``) plus a capturing ``print``; ``return`` provides the
result. While the script runs, ``sys.stdout`` points at stderr so nothing
but the final protocol blob ever reaches the real stdout.
"""

import json
import sys
import textwrap
from typing import Any, Callable, Dict, List, Sequence

ENTRY_NAME = "_sandbox_entry"


class ConfigError(Exception):
    pass


def load_config(argv: Sequence[str], required: Sequence[str]) -> Dict[str, Any]:
    if len(argv) < 2 or not argv[1]:
        raise ConfigError("No config provided")
    try:
        config = json.loads(argv[1])
    except ValueError:
        raise ConfigError("Invalid config JSON") from None
    if not isinstance(config, dict):
        raise ConfigError("Invalid config JSON")
    missing = [key for key in required if key not in config]
    if missing:
        raise ConfigError(f"Missing config keys: {', '.join(missing)}")
    return config


def compile_script(source: str, params: Sequence[str], filename: str) -> Callable[..., Any]:
    """Turn a script body into a callable taking ``params``."""
    body = textwrap.indent(textwrap.dedent(source), "    ") if source.strip() else "    pass"
    wrapped = f"def {ENTRY_NAME}({', '.join(params)}):\n{body}\n"
    namespace: Dict[str, Any] = {"__name__": "__sandbox__"}
    exec(compile(wrapped, filename, "exec"), namespace)
    return namespace[ENTRY_NAME]


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def emit(payload: Dict[str, Any], *, default: Callable[[Any], Any] = str) -> None:
    sys.__stdout__.write(json.dumps(payload, default=default))
    sys.__stdout__.flush()


def startup_error(message: str) -> None:
    sys.stderr.write(json.dumps({"error": message}))
    sys.stderr.flush()
    sys.exit(1)


def run_script(
    config: Dict[str, Any],
    params: Sequence[str],
    capabilities: Callable[[], List[Any]],
    make_print: Callable[[List[Any]], Callable[..., None]],
    *,
    encode: Callable[[Any], Any] = str,
    teardown: Callable[[], None] | None = None,
) -> int:
    """Run the script named in ``config`` and emit the protocol blob.

    Returns the process exit code.
    """
    logs: List[Any] = []
    real_stdout = sys.stdout
    sys.stdout = sys.stderr
    try:
        with open(config["scriptPath"], encoding="utf-8") as fh:
            source = fh.read()
        entry = compile_script(source, [*params, "print"], config["scriptPath"])
        result = entry(*capabilities(), make_print(logs))
    except Exception as exc:  # noqa: BLE001
        sys.stdout = real_stdout
        emit({"success": False, "error": describe_error(exc), "logs": logs}, default=encode)
        return 1
    finally:
        sys.stdout = real_stdout
        if teardown is not None:
            try:
                teardown()
            except Exception as exc:  # noqa: BLE001
                sys.stderr.write(f"teardown failed: {describe_error(exc)}\n")

    emit({"success": True, "result": result, "logs": logs}, default=encode)
    return 0
