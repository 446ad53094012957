from __future__ import annotations

"""backend/querygate/services/diagnostics/error_classifier.py

Centralized error classification for query and script executions.

This module looks at a native driver failure (a psycopg2 / pymongo
exception, or the error string a sandboxed script reported) and maps it to
one of two fault kinds:

- user-fault:  bad query/script shape, constraint violation, authentication
               failure caused by bad stored credentials, timeouts
- infra-fault: connectivity, DNS, TLS, unreachable host

The classification is:
- deterministic (no randomness)
- signature-based (SQLSTATE codes, exception type names, message text)
- total: anything not recognisably infrastructural is a user-fault

User-faults surface as QueryExecutionError (422) carrying the native message;
infra-faults surface as InternalError (500) with a generic connection-failure
message so infrastructure details are not leaked to the caller.

Typical reason values:
- timeout
- postgres-syntax-or-undefined
- postgres-integrity-violation
- postgres-invalid-authorization
- postgres-connection-failure
- mongo-operation-failure
- mongo-connection-failure
- script-syntax-error
- unclassified
"""

import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional

from querygate.errors import AppError, InternalError, QueryExecutionError

logger = logging.getLogger(__name__)

POSTGRES = "postgres"
MONGODB = "mongodb"

CONNECTION_FAILURE_MESSAGE = "Database connection failed: the target database could not be reached"


class FaultKind(str, enum.Enum):
    USER = "user-fault"
    INFRA = "infra-fault"


@dataclass(frozen=True)
class Classification:
    fault: FaultKind
    reason: str
    timeout: bool = False


_TIMEOUT = Classification(FaultKind.USER, "timeout", timeout=True)
_UNCLASSIFIED = Classification(FaultKind.USER, "unclassified")


def _lower(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _contains_any(haystack: str, needles: list[str]) -> bool:
    return any(n in haystack for n in needles)


# ---- Signature tables --------------------------------------------------------

# SQLSTATE class (first two characters) -> reason. All user-faults.
_POSTGRES_USER_CODE_CLASSES = {
    "42": "postgres-syntax-or-undefined",
    "23": "postgres-integrity-violation",
    "22": "postgres-data-exception",
    "28": "postgres-invalid-authorization",
    "3D": "postgres-invalid-catalog",
    "3F": "postgres-invalid-schema",
    "25": "postgres-transaction-state",
    "40": "postgres-transaction-rollback",
    "0A": "postgres-feature-not-supported",
}

_POSTGRES_INFRA_CODE_CLASSES = {
    "08": "postgres-connection-failure",
}

_POSTGRES_TIMEOUT_CODES = {"57014"}

# Stored credentials are wrong or the database does not exist: checked before
# the connectivity table because libpq wraps these in "connection to server
# ... failed: FATAL: ..." messages.
_POSTGRES_USER_TEXT = [
    "password authentication failed",
    "no password supplied",
    "role \"",
    "does not exist",
    "permission denied",
]

_POSTGRES_INFRA_TEXT = [
    "could not connect to server",
    "connection refused",
    "could not translate host name",
    "name or service not known",
    "nodename nor servname",
    "server closed the connection unexpectedly",
    "ssl syscall error",
    "ssl error",
    "ssl connection has been closed",
    "network is unreachable",
    "no route to host",
    "connection to server at",
    "connection reset by peer",
]

_POSTGRES_SQL_TEXT = [
    "syntax error",
    "column",
    "relation",
    "table",
    "function",
    "constraint",
    "violation",
    "duplicate key",
]

# Exception type name -> classification. The first name found while walking
# the exception's MRO wins, so subclasses listed here shadow their parents.
_MONGO_TYPE_TABLE = {
    "NetworkTimeout": _TIMEOUT,
    "ExecutionTimeout": _TIMEOUT,
    "WTimeoutError": _TIMEOUT,
    # Raised for refused, unreachable or unresolvable hosts; not an operation timeout.
    "ServerSelectionTimeoutError": Classification(FaultKind.INFRA, "mongo-connection-failure"),
    "AutoReconnect": Classification(FaultKind.INFRA, "mongo-connection-failure"),
    "ConnectionFailure": Classification(FaultKind.INFRA, "mongo-connection-failure"),
    "DuplicateKeyError": Classification(FaultKind.USER, "mongo-duplicate-key"),
    "BulkWriteError": Classification(FaultKind.USER, "mongo-write-failure"),
    "WriteError": Classification(FaultKind.USER, "mongo-write-failure"),
    "OperationFailure": Classification(FaultKind.USER, "mongo-operation-failure"),
    "InvalidOperation": Classification(FaultKind.USER, "mongo-invalid-operation"),
    "InvalidURI": Classification(FaultKind.USER, "mongo-invalid-uri"),
    "MongoExpressionError": Classification(FaultKind.USER, "mongo-invalid-expression"),
    "TimeoutError": _TIMEOUT,
}

_MONGO_INFRA_TEXT = [
    "autoreconnect",
    "connectionfailure",
    "connection refused",
    "connection reset",
    "name or service not known",
    "nodename nor servname",
    "dns query name does not exist",
    "no route to host",
    "network is unreachable",
    "ssl handshake failed",
    "certificate verify failed",
]

_MONGO_QUERY_TEXT = [
    "mongodb query failed",
    "duplicate key",
    "validation failed",
    "document failed validation",
    "unauthorized",
    "authentication failed",
    "not authorized",
    "namespace not found",
    "operationfailure",
]

# Python exceptions raised by the script itself, matched on the leading type name.
_SCRIPT_SYNTAX_TYPES = {"SyntaxError", "IndentationError", "TabError", "NameError"}

# libpq wording for SQLSTATE 42601; psycopg2 also names that exception SyntaxError.
_POSTGRES_SYNTAX_TEXT = [
    "syntax error at or near",
    "syntax error at end of input",
]

_LEADING_TYPE = re.compile(r"^([A-Za-z_][\w.]*):")

_TIMEOUT_TEXT = [
    "timed out",
    "timeout expired",
    "statement timeout",
    "canceling statement due to",
    "networktimeout",
    "executiontimeout",
]


# ---- Total signature function ------------------------------------------------


def classify_signature(
    family: str,
    code: Optional[str] = None,
    message: Optional[str] = None,
    type_names: tuple[str, ...] = (),
) -> Classification:
    """Classify a native error signature for a driver family.

    ``code`` is a SQLSTATE for Postgres, ``type_names`` the exception MRO
    names for MongoDB, ``message`` the native text. Never raises; anything
    unmatched is a user-fault.
    """
    text = _lower(message)
    code = (code or "").strip().upper()

    if family == POSTGRES:
        if code in _POSTGRES_TIMEOUT_CODES:
            return _TIMEOUT
        if code[:2] in _POSTGRES_INFRA_CODE_CLASSES:
            return Classification(FaultKind.INFRA, _POSTGRES_INFRA_CODE_CLASSES[code[:2]])
        if code[:2] in _POSTGRES_USER_CODE_CLASSES:
            return Classification(FaultKind.USER, _POSTGRES_USER_CODE_CLASSES[code[:2]])
        if _contains_any(text, _TIMEOUT_TEXT):
            return _TIMEOUT
        if _contains_any(text, _POSTGRES_USER_TEXT):
            return Classification(FaultKind.USER, "postgres-rejected-by-server")
        if _contains_any(text, _POSTGRES_INFRA_TEXT):
            return Classification(FaultKind.INFRA, "postgres-connection-failure")
        if _contains_any(text, _POSTGRES_SQL_TEXT):
            return Classification(FaultKind.USER, "postgres-syntax-or-undefined")
        return _UNCLASSIFIED

    if family == MONGODB:
        for name in type_names:
            if name in _MONGO_TYPE_TABLE:
                return _MONGO_TYPE_TABLE[name]
        if "ConfigurationError" in type_names:
            if _contains_any(text, _MONGO_INFRA_TEXT):
                return Classification(FaultKind.INFRA, "mongo-dns-failure")
            return Classification(FaultKind.USER, "mongo-invalid-uri")
        if _contains_any(text, _TIMEOUT_TEXT):
            return _TIMEOUT
        if _contains_any(text, _MONGO_INFRA_TEXT):
            return Classification(FaultKind.INFRA, "mongo-connection-failure")
        if _contains_any(text, _MONGO_QUERY_TEXT):
            return Classification(FaultKind.USER, "mongo-operation-failure")
        return _UNCLASSIFIED

    return _UNCLASSIFIED


# ---- Exception -> AppError ---------------------------------------------------


def _native_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


def _to_error(
    classification: Classification,
    message: str,
    *,
    prefix: str,
) -> AppError:
    if classification.fault is FaultKind.INFRA:
        logger.warning("Infrastructure failure (%s): %s", classification.reason, message)
        return InternalError(CONNECTION_FAILURE_MESSAGE)
    if classification.timeout:
        return QueryExecutionError(message)
    return QueryExecutionError(f"{prefix}: {message}")


def classify_postgres_error(exc: BaseException) -> AppError:
    """Map a psycopg2 (or timeout) exception onto an AppError."""
    if isinstance(exc, AppError):
        return exc
    message = _native_message(exc)
    if isinstance(exc, TimeoutError):
        return QueryExecutionError(message)
    classification = classify_signature(
        POSTGRES, code=getattr(exc, "pgcode", None), message=message
    )
    return _to_error(classification, message, prefix="SQL Error")


def classify_mongo_error(exc: BaseException) -> AppError:
    """Map a pymongo / expression (or timeout) exception onto an AppError."""
    if isinstance(exc, AppError):
        return exc
    message = _native_message(exc)
    type_names = tuple(cls.__name__ for cls in type(exc).__mro__)
    classification = classify_signature(MONGODB, message=message, type_names=type_names)
    return _to_error(classification, message, prefix="MongoDB Error")


def _leading_type(message: str) -> str:
    """``"psycopg2.errors.SyntaxError: ..."`` -> ``"SyntaxError"``."""
    match = _LEADING_TYPE.match(message)
    return match.group(1).rsplit(".", 1)[-1] if match else ""


def classify_script_failure(family: str, message: Optional[str]) -> AppError:
    """Map the error string reported by a sandboxed script onto an AppError.

    The sandbox only hands back ``"<ExceptionType>: <message>"`` text, so the
    leading type name is matched first, then the message text. The sandbox's
    own timeout message is always a user-fault and is passed through
    unchanged.
    """
    message = (message or "").strip() or "Script execution failed"
    text = message.lower()
    leading = _leading_type(message)

    if family == MONGODB and leading in _MONGO_TYPE_TABLE:
        return _to_error(_MONGO_TYPE_TABLE[leading], message, prefix="MongoDB Error")

    if "timed out" in text:
        return QueryExecutionError(message)

    if family == POSTGRES and _contains_any(text, _POSTGRES_SYNTAX_TEXT):
        return QueryExecutionError(f"SQL Error: {message}")

    if leading in _SCRIPT_SYNTAX_TYPES:
        return QueryExecutionError(f"Script syntax error: {message}")

    if family == POSTGRES:
        classification = classify_signature(POSTGRES, message=message)
        if classification.timeout:
            return QueryExecutionError(message)
        if classification.fault is FaultKind.INFRA:
            return _to_error(classification, message, prefix="SQL Error")
        if classification.reason != _UNCLASSIFIED.reason:
            return QueryExecutionError(f"SQL Error: {message}")
        return QueryExecutionError(message)

    if family == MONGODB:
        classification = classify_signature(MONGODB, message=message)
        if classification.timeout:
            return QueryExecutionError(message)
        if classification.fault is FaultKind.INFRA:
            return _to_error(classification, message, prefix="MongoDB Error")
        if classification.reason != _UNCLASSIFIED.reason:
            return QueryExecutionError(f"MongoDB Error: {message}")
        return QueryExecutionError(message)

    return QueryExecutionError(message)


def fault_of(exc: BaseException) -> FaultKind:
    """Fault kind of an already-classified (or unexpected) execution error."""
    if isinstance(exc, InternalError):
        return FaultKind.INFRA
    return FaultKind.USER
