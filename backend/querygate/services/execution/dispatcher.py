from __future__ import annotations

"""backend/querygate/services/execution/dispatcher.py

Execution dispatcher.

Picks one of four executor paths for {database type x submission type}:

    POSTGRES x QUERY   -> execute_postgres_query
    POSTGRES x SCRIPT  -> sandbox (postgres runner)
    MONGODB  x QUERY   -> execute_mongo_query
    MONGODB  x SCRIPT  -> sandbox (mongo runner)

``prepare`` validates the instance descriptor and the submission before any
connection is attempted and raises BadRequestError on a missing
precondition; the returned plan performs the execution when run.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from querygate.errors import BadRequestError
from querygate.models import DbType, SubmissionType
from querygate.services.execution.base import ExecutionSettings
from querygate.services.execution.mongo_query import execute_mongo_query
from querygate.services.execution.postgres_query import (
    PostgresConnection,
    execute_postgres_query,
)
from querygate.services.sandbox.runner import (
    ScriptSettings,
    execute_mongo_script,
    execute_postgres_script,
)

logger = logging.getLogger(__name__)


@dataclass
class InstanceDescriptor:
    """Decrypted view of a DbInstance, as consumed by the executors."""

    id: str
    name: str
    type: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    mongo_uri: Optional[str] = None


@dataclass
class ExecutionPlan:
    path: str
    runner: Callable[[], Any]

    def run(self) -> Any:
        return self.runner()


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


class ExecutionDispatcher:
    def __init__(
        self,
        settings: ExecutionSettings | None = None,
        *,
        postgres_query: Callable[..., Any] = execute_postgres_query,
        mongo_query: Callable[..., Any] = execute_mongo_query,
        postgres_script: Callable[..., Any] = execute_postgres_script,
        mongo_script: Callable[..., Any] = execute_mongo_script,
    ) -> None:
        self.settings = settings or ExecutionSettings()
        self._postgres_query = postgres_query
        self._mongo_query = mongo_query
        self._postgres_script = postgres_script
        self._mongo_script = mongo_script

    @property
    def script_settings(self) -> ScriptSettings:
        return ScriptSettings(
            timeout_ms=int(self.settings.sandbox_timeout_seconds * 1000),
            python=self.settings.sandbox_python,
            env_passthrough=list(self.settings.sandbox_env_passthrough),
            host_secrets=list(self.settings.host_secrets),
        )

    def prepare(
        self,
        instance: InstanceDescriptor,
        submission_type: SubmissionType | str,
        *,
        query_text: Optional[str],
        script_content: Optional[str],
        database_name: str,
    ) -> ExecutionPlan:
        try:
            db_type = DbType(instance.type)
        except ValueError:
            raise BadRequestError(f"Unsupported database type: {instance.type}") from None
        try:
            submission = SubmissionType(submission_type)
        except ValueError:
            raise BadRequestError(f"Unsupported submission type: {submission_type}") from None

        if db_type is DbType.POSTGRES:
            fields = (instance.host, instance.port, instance.username, instance.password)
            if not all(_has_value(field) for field in fields):
                raise BadRequestError("Postgres instance missing required connection details")
        elif not _has_value(instance.mongo_uri):
            raise BadRequestError("Mongo URI not configured")

        if submission is SubmissionType.SCRIPT and not _has_value(script_content):
            raise BadRequestError("Script content missing")
        if submission is SubmissionType.QUERY and not _has_value(query_text):
            raise BadRequestError("Query text missing")

        path = f"{db_type.value}:{submission.value}"
        logger.debug("Dispatching instance %s via %s", instance.id, path)

        if db_type is DbType.POSTGRES and submission is SubmissionType.QUERY:
            connection = PostgresConnection(
                host=instance.host,
                port=int(instance.port),
                username=instance.username,
                password=instance.password,
                database=database_name,
            )
            return ExecutionPlan(
                path,
                lambda: self._postgres_query(
                    connection,
                    query_text,
                    timeout_seconds=self.settings.query_timeout_seconds,
                    connect_timeout_seconds=self.settings.postgres_connect_timeout_seconds,
                    sslmode=self.settings.postgres_sslmode,
                ),
            )

        if db_type is DbType.POSTGRES:
            return ExecutionPlan(
                path,
                lambda: self._postgres_script(
                    script_content,
                    host=instance.host,
                    port=int(instance.port),
                    username=instance.username,
                    password=instance.password,
                    database=database_name,
                    settings=self.script_settings,
                ),
            )

        if submission is SubmissionType.QUERY:
            return ExecutionPlan(
                path,
                lambda: self._mongo_query(
                    instance.mongo_uri,
                    database_name,
                    query_text,
                    timeout_seconds=self.settings.query_timeout_seconds,
                    connect_timeout_ms=self.settings.mongo_connect_timeout_ms,
                    server_selection_timeout_ms=self.settings.mongo_server_selection_timeout_ms,
                ),
            )

        return ExecutionPlan(
            path,
            lambda: self._mongo_script(
                script_content,
                mongo_uri=instance.mongo_uri,
                database_name=database_name,
                settings=self.script_settings,
            ),
        )

    def execute(
        self,
        instance: InstanceDescriptor,
        submission_type: SubmissionType | str,
        *,
        query_text: Optional[str],
        script_content: Optional[str],
        database_name: str,
    ) -> Any:
        """Validate and run in one step."""
        plan = self.prepare(
            instance,
            submission_type,
            query_text=query_text,
            script_content=script_content,
            database_name=database_name,
        )
        return plan.run()
