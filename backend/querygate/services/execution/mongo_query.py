from __future__ import annotations

"""backend/querygate/services/execution/mongo_query.py

Direct executor for MongoDB QUERY submissions.
"""

import json
import logging
from typing import Any, Callable

from bson import json_util
from bson.json_util import RELAXED_JSON_OPTIONS
from pymongo import MongoClient

from querygate.services.diagnostics.error_classifier import classify_mongo_error
from querygate.services.execution.base import DEFAULT_TIMEOUT_SECONDS, run_with_timeout
from querygate.services.execution.mongo_accessor import DatabaseAccessor
from querygate.services.execution.mongo_expression import (
    evaluate_expression,
    parse_expression,
)

logger = logging.getLogger(__name__)


def to_json_snapshot(value: Any) -> Any:
    """Plain JSON value for BSON results (ObjectId -> {"$oid"}, dates -> {"$date"})."""
    return json.loads(json_util.dumps(value, json_options=RELAXED_JSON_OPTIONS))


def execute_mongo_query(
    mongo_uri: str,
    database_name: str,
    query_text: str,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    connect_timeout_ms: int = 10000,
    server_selection_timeout_ms: int = 10000,
    client_factory: Callable[..., MongoClient] = MongoClient,
) -> Any:
    client = None
    try:
        expression = parse_expression(query_text)
        client = client_factory(
            mongo_uri,
            connectTimeoutMS=connect_timeout_ms,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            socketTimeoutMS=int(timeout_seconds * 1000),
        )
        db = DatabaseAccessor(client[database_name])
        result = run_with_timeout(lambda: evaluate_expression(expression, db), timeout_seconds)
        return to_json_snapshot(result)
    except Exception as exc:  # noqa: BLE001
        raise classify_mongo_error(exc) from exc
    finally:
        if client is not None:
            try:
                client.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Failed to close MongoDB client: %s", exc)
