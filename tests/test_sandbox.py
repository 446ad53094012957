import json
import os
import re
import sys
import time
from pathlib import Path

import pytest

from querygate.errors import InternalError, QueryExecutionError
from querygate.services.sandbox import runner
from querygate.services.sandbox.child import compile_script, describe_error, load_config, ConfigError
from querygate.services.sandbox.runner import (
    SandboxResult,
    ScriptSettings,
    build_sandbox_env,
    run_sandboxed,
    shape_mongo_result,
    shape_postgres_result,
)

PY = [sys.executable, "-c"]


def script(body):
    return PY + [body]


# ---- run_sandboxed ------------------------------------------------------


def test_json_protocol_is_decoded():
    code = (
        "import json, sys; cfg = json.loads(sys.argv[1]); "
        "print(json.dumps({'success': True, 'result': cfg['n'] * 2, 'logs': ['hi']}))"
    )

    result = run_sandboxed(script(code), {"n": 21}, timeout_ms=10000)

    assert result.success is True
    assert result.result == 42
    assert result.logs == ["hi"]
    assert result.return_code == 0


def test_reported_failure_is_kept():
    code = "import json, sys; print(json.dumps({'success': False, 'error': 'boom'})); sys.exit(1)"

    result = run_sandboxed(script(code), {}, timeout_ms=10000)

    assert result.success is False
    assert result.error == "boom"


def test_non_json_stdout_with_zero_exit_is_raw_success():
    result = run_sandboxed(script("print('plain text')"), {}, timeout_ms=10000)

    assert result.success is True
    assert result.stdout.strip() == "plain text"
    assert result.error is None


def test_non_json_stdout_with_nonzero_exit_uses_stderr():
    code = "import sys; sys.stderr.write('bad things'); sys.exit(3)"

    result = run_sandboxed(script(code), {}, timeout_ms=10000)

    assert result.success is False
    assert result.error == "bad things"
    assert result.return_code == 3


def test_silent_crash_gets_generic_message():
    result = run_sandboxed(script("import sys; sys.exit(2)"), {}, timeout_ms=10000)

    assert result.error == "Script execution failed"


def test_timeout_kills_child_and_discards_output():
    code = "import sys, time; sys.stdout.write('partial'); sys.stdout.flush(); time.sleep(30)"

    started = time.monotonic()
    result = run_sandboxed(script(code), {}, timeout_ms=1000)
    elapsed = time.monotonic() - started

    assert result.success is False
    assert result.timed_out is True
    assert "timed out after 1 seconds" in result.error
    assert result.stdout == ""
    assert elapsed < 10


def test_timeout_terminates_the_child_process(tmp_path):
    pid_file = tmp_path / "pid"
    code = (
        "import json, os, sys, time; cfg = json.loads(sys.argv[1]); "
        "open(cfg['pidFile'], 'w').write(str(os.getpid())); time.sleep(30)"
    )

    result = run_sandboxed(script(code), {"pidFile": str(pid_file)}, timeout_ms=1000)

    assert result.timed_out is True
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_spawn_failure_is_internal_error():
    with pytest.raises(InternalError, match="Failed to start sandbox"):
        run_sandboxed(["/nonexistent/querygate-python"], {}, timeout_ms=1000)


def test_child_environment_excludes_host_secrets(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", "super-secret")
    monkeypatch.setenv("JWT_SECRET", "also-secret")
    monkeypatch.setenv("TZ", "UTC")
    code = "import json, os; print(json.dumps({'success': True, 'result': dict(os.environ)}))"

    env = build_sandbox_env(["PATH", "TZ", "JWT_SECRET"])
    result = run_sandboxed(script(code), {}, timeout_ms=10000, env=env)

    child_env = result.result
    assert "ENCRYPTION_KEY" not in child_env
    assert "JWT_SECRET" not in child_env
    assert child_env["TZ"] == "UTC"
    assert child_env["PYTHONIOENCODING"] == "utf-8"


def test_build_env_ignores_secret_like_names():
    env = build_sandbox_env(
        ["PATH", "API_TOKEN", "DB_PASSWORD", "LANG"],
        source={"PATH": "/bin", "API_TOKEN": "t", "DB_PASSWORD": "p", "LANG": "C"},
    )

    assert env["PATH"] == "/bin"
    assert env["LANG"] == "C"
    assert "API_TOKEN" not in env
    assert "DB_PASSWORD" not in env


def test_build_env_drops_values_matching_host_secrets():
    env = build_sandbox_env(
        ["PATH", "LANG", "TZ"],
        source={"PATH": "/bin", "LANG": "j-value", "TZ": "UTC"},
        secrets=["k-value", "j-value", None],
    )

    assert "LANG" not in env
    assert env["PATH"] == "/bin"
    assert env["TZ"] == "UTC"


def test_script_runs_pass_host_secrets_to_the_env_filter(monkeypatch):
    monkeypatch.setenv("LANG", "j-value")
    seen = {}

    def fake_run(command, config, *, timeout_ms, env):
        seen["env"] = env
        return SandboxResult(success=True, result=1)

    monkeypatch.setattr(runner, "run_sandboxed", fake_run)

    runner.execute_mongo_script(
        "return 1",
        mongo_uri="mongodb://m",
        database_name="d",
        settings=ScriptSettings(env_passthrough=["PATH", "LANG"], host_secrets=["j-value"]),
    )

    assert "LANG" not in seen["env"]


# ---- result shaping -----------------------------------------------------


def test_postgres_shaping_prefers_return_value():
    assert shape_postgres_result(SandboxResult(success=True, result=[1, 2], logs=["x"])) == [1, 2]


def test_postgres_shaping_flattens_printed_rows():
    result = SandboxResult(success=True, logs=['[{"id": 1}, {"id": 2}]', '{"id": 3}', "done"])

    assert shape_postgres_result(result) == [{"id": 1}, {"id": 2}, {"id": 3}, "done"]


def test_postgres_shaping_unwraps_single_row():
    assert shape_postgres_result(SandboxResult(success=True, logs=['[{"id": 1}]'])) == {"id": 1}


def test_postgres_shaping_falls_back_to_raw_output():
    result = SandboxResult(success=True, stdout="not json", stderr="")

    assert shape_postgres_result(result) == {"output": "not json", "stderr": ""}


def test_mongo_shaping():
    assert shape_mongo_result(SandboxResult(success=True, result={"n": 1})) == {"n": 1}
    assert shape_mongo_result(SandboxResult(success=True, logs=[{"a": 1}, {"b": 2}])) == {"b": 2}
    assert shape_mongo_result(SandboxResult(success=True)) == {"success": True}


# ---- script executors ---------------------------------------------------


def test_failed_postgres_script_is_classified(monkeypatch):
    monkeypatch.setattr(
        runner,
        "run_sandboxed",
        lambda *a, **k: SandboxResult(success=False, error='UndefinedTable: relation "nope" does not exist'),
    )

    with pytest.raises(QueryExecutionError, match=r'^SQL Error: UndefinedTable'):
        runner.execute_postgres_script(
            "return query('select * from nope')",
            host="pg",
            port=5432,
            username="u",
            password="p",
            database="prod",
        )


def test_script_timeout_surfaces_as_user_fault(monkeypatch):
    monkeypatch.setattr(
        runner,
        "run_sandboxed",
        lambda *a, **k: SandboxResult(success=False, error="Script execution timed out after 1 seconds"),
    )

    with pytest.raises(QueryExecutionError, match="timed out after 1 seconds"):
        runner.execute_mongo_script("while True: pass", mongo_uri="mongodb://m", database_name="d")


def test_script_file_and_config_reach_the_child_and_are_cleaned_up(monkeypatch):
    seen = {}

    def fake_run(command, config, *, timeout_ms, env):
        seen["command"] = command
        seen["config"] = config
        seen["content"] = Path(config["scriptPath"]).read_text()
        seen["timeout_ms"] = timeout_ms
        return SandboxResult(success=True, result={"ok": 1})

    monkeypatch.setattr(runner, "run_sandboxed", fake_run)

    result = runner.execute_mongo_script(
        "return 1",
        mongo_uri="mongodb://m",
        database_name="events",
        settings=ScriptSettings(timeout_ms=1500, python="/usr/bin/python3"),
    )

    assert result == {"ok": 1}
    assert seen["command"] == ["/usr/bin/python3", "-m", runner.MONGO_RUNNER]
    assert seen["config"]["mongoUri"] == "mongodb://m"
    assert seen["config"]["databaseName"] == "events"
    assert seen["content"] == "return 1"
    assert seen["timeout_ms"] == 1500
    assert not Path(seen["config"]["scriptPath"]).exists()


# ---- child helpers ------------------------------------------------------


def test_compile_script_wraps_body_in_function():
    logs = []
    entry = compile_script("total = a + b\nprint(total)\nreturn total * 2", ["a", "b", "print"], "s.py")

    assert entry(2, 3, logs.append) == 10
    assert logs == [5]


def test_compile_script_reports_syntax_errors():
    with pytest.raises(SyntaxError):
        compile_script("return (", ["print"], "s.py")


def test_describe_error():
    assert describe_error(NameError("name 'x' is not defined")) == "NameError: name 'x' is not defined"


@pytest.mark.parametrize(
    "argv, message",
    [
        (["prog"], "No config provided"),
        (["prog", "{not json"], "Invalid config JSON"),
        (["prog", json.dumps({"scriptPath": "/tmp/x"})], "Missing config keys: mongoUri"),
    ],
)
def test_load_config_errors(argv, message):
    with pytest.raises(ConfigError, match=message):
        load_config(argv, ["scriptPath", "mongoUri"])


def test_postgres_child_end_to_end_without_database(tmp_path):
    script_path = tmp_path / "job.py"
    script_path.write_text("print({'rows': 1})\nreturn [1, 2, 3]\n")
    config = {
        "scriptPath": str(script_path),
        "host": "127.0.0.1",
        "port": 1,
        "user": "u",
        "password": "p",
        "database": "d",
    }

    result = run_sandboxed(
        [sys.executable, "-m", runner.POSTGRES_RUNNER],
        config,
        timeout_ms=20000,
        env=build_sandbox_env(["PATH"]),
    )

    assert result.success is True
    assert result.result == [1, 2, 3]
    assert result.logs == ['{"rows": 1}']


def test_postgres_child_reports_script_errors(tmp_path):
    script_path = tmp_path / "job.py"
    script_path.write_text("return undefined_name\n")
    config = {
        "scriptPath": str(script_path),
        "host": "127.0.0.1",
        "port": 1,
        "user": "u",
        "password": "p",
        "database": "d",
    }

    result = run_sandboxed(
        [sys.executable, "-m", runner.POSTGRES_RUNNER],
        config,
        timeout_ms=20000,
        env=build_sandbox_env(["PATH"]),
    )

    assert result.success is False
    assert result.error == "NameError: name 'undefined_name' is not defined"
    assert result.return_code == 1


def test_mongo_child_reports_bad_uri_as_protocol_error(tmp_path):
    script_path = tmp_path / "job.py"
    script_path.write_text("return db.name\n")
    config = {
        "scriptPath": str(script_path),
        "mongoUri": "mongodb://u:pw@h:notaport",
        "databaseName": "d",
    }

    result = run_sandboxed(
        [sys.executable, "-m", runner.MONGO_RUNNER],
        config,
        timeout_ms=20000,
        env=build_sandbox_env(["PATH"]),
    )

    assert result.success is False
    assert result.return_code == 1
    assert "Traceback" not in result.error
    assert re.match(r"^\w+: ", result.error)
