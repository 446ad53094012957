from __future__ import annotations

"""backend/querygate/config/settings.py

Application configuration using environment-driven settings.

This module centralizes:
- the application database URL
- execution timeouts for direct queries and sandboxed scripts
- driver connection defaults (Postgres SSL mode, Mongo selection timeouts)
- which environment variables a sandboxed script is allowed to inherit
- host secrets (encryption / signing keys) that must never reach a sandbox
- Slack, Statsig and pagination defaults

Components do not read these values from the process environment on their
own; they receive them at construction time (see
``ExecutionSettings.from_settings`` and ``SlackNotifier.from_settings``).
"""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "querygate"
    environment: str = "development"

    # Application database (requests, users, pods, instances, audit)
    database_url: str = "postgresql+psycopg2://postgres:postgres@db:5432/querygate"

    # Execution timeouts (seconds)
    query_timeout_seconds: int = 30
    sandbox_timeout_seconds: int = 30

    # Target database drivers
    postgres_connect_timeout_seconds: int = 10
    postgres_sslmode: str = "prefer"
    mongo_connect_timeout_ms: int = 10000
    mongo_server_selection_timeout_ms: int = 10000

    # Sandbox child process
    sandbox_python: str | None = None
    sandbox_env_passthrough: List[str] = ["PATH", "LANG", "LC_ALL", "TZ"]

    # Host secrets
    encryption_key: str | None = None
    jwt_secret: str | None = None

    # Notifications / analytics
    slack_enabled: bool = False
    slack_bot_token: str | None = None
    slack_approval_channel: str | None = None
    statsig_server_secret: str | None = None

    # Read paths
    default_page_size: int = 20
    max_page_size: int = 100

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()
