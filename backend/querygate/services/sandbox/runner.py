from __future__ import annotations

"""backend/querygate/services/sandbox/runner.py

Host side of the script sandbox.

Every SCRIPT submission runs in one dedicated child interpreter:

- the script is written to a temp file whose path, together with the target
  database coordinates, is handed to the child as a single JSON argv entry
- the child's environment is rebuilt from an allow-list; host secrets never
  reach it
- stdout and stderr are captured separately
- a hard wall-clock timeout kills the child (SIGKILL) and reports
  ``success=False`` with a "timed out" message
- the child answers with exactly one JSON blob ``{success, result?, logs?,
  error?}`` on stdout; non-JSON stdout falls back to the exit code

``execute_postgres_script`` / ``execute_mongo_script`` add error
classification and result shaping on top of ``run_sandboxed``.
"""

import json
import logging
import os
import subprocess
import sys
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List

from querygate.errors import InternalError
from querygate.services.diagnostics.error_classifier import (
    MONGODB,
    POSTGRES,
    classify_script_failure,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000

POSTGRES_RUNNER = "querygate.services.sandbox.postgres_script"
MONGO_RUNNER = "querygate.services.sandbox.mongo_script"

# Names that are never forwarded, even when listed in the passthrough.
_SECRET_MARKERS = ("SECRET", "KEY", "TOKEN", "PASSWORD")

# Directory that contains the ``querygate`` package.
_PACKAGE_ROOT = str(Path(__file__).resolve().parents[3])


@dataclass
class SandboxResult:
    """Outcome of a single sandboxed run."""

    success: bool
    result: Any = None
    logs: List[Any] | None = None
    error: str | None = None
    stdout: str = ""
    stderr: str = ""
    return_code: int | None = None
    timed_out: bool = False


@dataclass
class ScriptSettings:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    python: str | None = None
    env_passthrough: List[str] = field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "TZ"]
    )
    host_secrets: List[str] = field(default_factory=list)


def build_sandbox_env(
    passthrough: Iterable[str],
    source: Dict[str, str] | None = None,
    secrets: Iterable[str] = (),
) -> Dict[str, str]:
    """Minimal child environment built from an allow-list of host variables.

    Variables whose value equals one of ``secrets`` are dropped whatever
    their name.
    """
    source = os.environ if source is None else source
    secret_values = {value for value in secrets if value}
    env: Dict[str, str] = {}
    for name in passthrough:
        if any(marker in name.upper() for marker in _SECRET_MARKERS):
            logger.warning("Refusing to pass %s into the sandbox", name)
            continue
        if name not in source:
            continue
        if source[name] in secret_values:
            logger.warning("Refusing to pass %s into the sandbox: value matches a host secret", name)
            continue
        env[name] = source[name]
    env["PYTHONPATH"] = _PACKAGE_ROOT
    env["PYTHONIOENCODING"] = "utf-8"
    env["PYTHONDONTWRITEBYTECODE"] = "1"
    return env


def _parse_output(stdout: str, stderr: str, return_code: int) -> SandboxResult:
    try:
        parsed = json.loads(stdout)
        if not isinstance(parsed, dict):
            raise ValueError("sandbox output is not an object")
    except ValueError:
        logger.info("Sandbox stdout is not a JSON object; falling back to exit code %s", return_code)
        success = return_code == 0
        return SandboxResult(
            success=success,
            error=None if success else (stderr.strip() or "Script execution failed"),
            stdout=stdout,
            stderr=stderr,
            return_code=return_code,
        )

    success = parsed.get("success")
    return SandboxResult(
        success=bool(success) if success is not None else return_code == 0,
        result=parsed.get("result"),
        logs=parsed.get("logs"),
        error=parsed.get("error"),
        stdout=stdout,
        stderr=stderr,
        return_code=return_code,
    )


def run_sandboxed(
    command: List[str],
    config: Dict[str, Any],
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    env: Dict[str, str] | None = None,
) -> SandboxResult:
    """Spawn ``command`` with ``config`` as its last argument and wait for it.

    On timeout the child is killed and whatever it wrote is discarded.
    """
    cmd = [*command, json.dumps(config)]
    timeout_seconds = timeout_ms / 1000
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
            env=env if env is not None else build_sandbox_env(["PATH"]),
        )
    except subprocess.TimeoutExpired:
        logger.warning("Sandbox child killed after %gs", timeout_seconds)
        return SandboxResult(
            success=False,
            error=f"Script execution timed out after {timeout_seconds:g} seconds",
            timed_out=True,
        )
    except OSError as exc:
        raise InternalError(f"Failed to start sandbox: {exc}") from exc

    return _parse_output(proc.stdout or "", proc.stderr or "", proc.returncode)


def create_temp_script(content: str) -> Path:
    path = Path(tempfile.gettempdir()) / f"script-{uuid.uuid4()}.py"
    path.write_text(content, encoding="utf-8")
    return path


def cleanup_temp_script(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.debug("Failed to remove temp script %s: %s", path, exc)


def _runner_command(module: str, settings: ScriptSettings) -> List[str]:
    return [settings.python or sys.executable, "-m", module]


def _run_script(
    module: str,
    script_content: str,
    coordinates: Dict[str, Any],
    settings: ScriptSettings,
) -> SandboxResult:
    script_path = create_temp_script(script_content)
    try:
        config = {"scriptPath": str(script_path), **coordinates}
        return run_sandboxed(
            _runner_command(module, settings),
            config,
            timeout_ms=settings.timeout_ms,
            env=build_sandbox_env(settings.env_passthrough, secrets=settings.host_secrets),
        )
    finally:
        cleanup_temp_script(script_path)


def _parse_log(entry: Any) -> Any:
    if isinstance(entry, str):
        try:
            return json.loads(entry)
        except ValueError:
            return entry
    return entry


def shape_postgres_result(result: SandboxResult) -> Any:
    """Returned value, else the printed rows, else the raw output."""
    if result.result is not None:
        return result.result

    rows: List[Any] = []
    for entry in result.logs or []:
        entry = _parse_log(entry)
        if isinstance(entry, list):
            rows.extend(entry)
        elif entry is not None:
            rows.append(entry)
    if rows:
        return rows[0] if len(rows) == 1 else rows

    try:
        return json.loads(result.stdout)
    except ValueError:
        return {"output": result.stdout, "stderr": result.stderr}


def shape_mongo_result(result: SandboxResult) -> Any:
    """Returned value, else the last printed value, else ``{"success": true}``."""
    if result.result is not None:
        return result.result
    if result.logs:
        return result.logs[-1]
    return {"success": True}


def execute_postgres_script(
    script_content: str,
    *,
    host: str,
    port: int,
    username: str,
    password: str,
    database: str,
    settings: ScriptSettings | None = None,
) -> Any:
    settings = settings or ScriptSettings()
    result = _run_script(
        POSTGRES_RUNNER,
        script_content,
        {
            "host": host,
            "port": int(port),
            "user": username,
            "password": password,
            "database": database,
        },
        settings,
    )
    if not result.success:
        raise classify_script_failure(POSTGRES, result.error)
    return shape_postgres_result(result)


def execute_mongo_script(
    script_content: str,
    *,
    mongo_uri: str,
    database_name: str,
    settings: ScriptSettings | None = None,
) -> Any:
    settings = settings or ScriptSettings()
    result = _run_script(
        MONGO_RUNNER,
        script_content,
        {"mongoUri": mongo_uri, "databaseName": database_name},
        settings,
    )
    if not result.success:
        raise classify_script_failure(MONGODB, result.error)
    return shape_mongo_result(result)
