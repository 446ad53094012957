"""Statsig product-analytics events for the approval flow.

One event per lifecycle transition, keyed by the user who caused it. The
client is created on first use and stays disabled when no server secret is
configured; every Statsig failure is logged and dropped.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from statsig import StatsigEvent, StatsigOptions, StatsigServer, StatsigUser

from querygate.config import get_settings

logger = logging.getLogger(__name__)

QUERY_SUBMITTED = "query_submitted"
QUERY_EXECUTED = "query_executed"
QUERY_FAILED = "query_failed"
QUERY_REJECTED = "query_rejected"


class _StatsigAdapter:
    def __init__(self, secret_key: str | None, environment: str):
        self.environment = environment
        self._server: Optional[StatsigServer] = None
        if secret_key:
            self._server = self._start(secret_key)

    def _start(self, secret_key: str) -> Optional[StatsigServer]:
        server = StatsigServer()
        try:
            server.initialize(secret_key, StatsigOptions(tier=self.environment))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Statsig initialization failed (%s): %s", self.environment, exc)
            return None
        return server

    @property
    def enabled(self) -> bool:
        return self._server is not None

    def log_event(
        self,
        *,
        user_id: str,
        event_name: str,
        value: str | int | float | None = None,
        metadata: Dict[str, str] | None = None,
    ) -> None:
        if self._server is None:
            return
        event = StatsigEvent(StatsigUser(user_id), event_name, value=value, metadata=metadata)
        try:
            self._server.log_event(event)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Statsig event %s for %s failed: %s", event_name, user_id, exc)

    def shutdown(self) -> None:
        if self._server is None:
            return
        try:
            self._server.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Statsig shutdown failed: %s", exc)


_statsig_client: _StatsigAdapter | None = None


def get_statsig_client() -> _StatsigAdapter:
    global _statsig_client
    if _statsig_client is None:
        settings = get_settings()
        _statsig_client = _StatsigAdapter(settings.statsig_server_secret, settings.environment)
    return _statsig_client


def shutdown_statsig() -> None:
    """Flush queued events; call once when the host process stops."""
    get_statsig_client().shutdown()


def log_query_event(
    event_name: str,
    *,
    user_id: str,
    query_id: str,
    metadata: Dict[str, Any] | None = None,
) -> None:
    """Record ``event_name`` for ``query_id``; metadata values are sent as strings."""
    payload = {"query_id": query_id}
    for key, item in (metadata or {}).items():
        if item is not None:
            payload[key] = str(item)
    get_statsig_client().log_event(
        user_id=user_id, event_name=event_name, value=query_id, metadata=payload
    )
