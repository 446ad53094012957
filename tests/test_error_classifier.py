import pytest
from pymongo.errors import (
    AutoReconnect,
    ConfigurationError,
    DuplicateKeyError,
    NetworkTimeout,
    OperationFailure,
    ServerSelectionTimeoutError,
)

from querygate.errors import InternalError, NotFoundError, QueryExecutionError
from querygate.services.diagnostics import (
    FaultKind,
    classify_mongo_error,
    classify_postgres_error,
    classify_script_failure,
    classify_signature,
    fault_of,
)
from querygate.services.diagnostics.error_classifier import CONNECTION_FAILURE_MESSAGE
from querygate.services.execution.base import ExecutionTimeout
from querygate.services.execution.mongo_expression import MongoExpressionError


class FakePgError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


@pytest.mark.parametrize(
    "code, message, fault",
    [
        ("42601", 'syntax error at or near "SELEC"', FaultKind.USER),
        ("42P01", 'relation "nope" does not exist', FaultKind.USER),
        ("23505", "duplicate key value violates unique constraint", FaultKind.USER),
        ("28P01", 'password authentication failed for user "reader"', FaultKind.USER),
        ("57014", "canceling statement due to statement timeout", FaultKind.USER),
        ("08006", "connection failure", FaultKind.INFRA),
        (None, "could not translate host name \"db\" to address", FaultKind.INFRA),
        (None, "connection to server at \"10.0.0.1\", port 5432 failed: Connection refused", FaultKind.INFRA),
        (None, "timeout expired", FaultKind.USER),
        (None, "something nobody has seen before", FaultKind.USER),
    ],
)
def test_postgres_signatures(code, message, fault):
    assert classify_signature("postgres", code=code, message=message).fault is fault


def test_classification_is_deterministic_and_total():
    for family in ("postgres", "mongodb", "oracle"):
        first = classify_signature(family, code="XX999", message="???")
        second = classify_signature(family, code="XX999", message="???")
        assert first == second
        assert first.fault is FaultKind.USER


def test_credentials_rejection_wins_over_connection_text():
    message = 'connection to server at "pg" failed: FATAL: password authentication failed for user "x"'

    assert classify_signature("postgres", message=message).fault is FaultKind.USER


def test_postgres_user_fault_carries_native_message():
    error = classify_postgres_error(FakePgError('syntax error at or near "SELEC"', "42601"))

    assert isinstance(error, QueryExecutionError)
    assert error.status_code == 422
    assert error.message == 'SQL Error: syntax error at or near "SELEC"'


def test_postgres_infra_fault_hides_details():
    error = classify_postgres_error(FakePgError("could not connect to server: Connection refused", None))

    assert isinstance(error, InternalError)
    assert error.message == CONNECTION_FAILURE_MESSAGE
    assert "refused" not in error.message


def test_timeouts_keep_their_message():
    error = classify_postgres_error(ExecutionTimeout("Query execution timed out after 30 seconds"))

    assert isinstance(error, QueryExecutionError)
    assert error.message == "Query execution timed out after 30 seconds"


def test_app_errors_pass_through_untouched():
    original = NotFoundError("gone")

    assert classify_postgres_error(original) is original
    assert classify_mongo_error(original) is original


@pytest.mark.parametrize(
    "exc, expected",
    [
        (DuplicateKeyError("E11000 duplicate key error"), QueryExecutionError),
        (OperationFailure("unknown operator: $bogus"), QueryExecutionError),
        (MongoExpressionError("unsupported collection method 'drop'"), QueryExecutionError),
        (NetworkTimeout("timed out"), QueryExecutionError),
        (ServerSelectionTimeoutError("mongo:27017: [Errno 111] Connection refused"), InternalError),
        (ServerSelectionTimeoutError("mongo:27017: timed out"), InternalError),
        (AutoReconnect("connection closed"), InternalError),
        (ConfigurationError("The DNS query name does not exist: _mongodb._tcp.x"), InternalError),
        (ConfigurationError("Unknown option foo"), QueryExecutionError),
    ],
)
def test_mongo_errors(exc, expected):
    assert isinstance(classify_mongo_error(exc), expected)


def test_mongo_user_fault_prefix():
    error = classify_mongo_error(OperationFailure("unknown operator: $bogus"))

    assert error.message == "MongoDB Error: unknown operator: $bogus"


@pytest.mark.parametrize(
    "family, message, expected_type, expected_message",
    [
        ("postgres", "Script execution timed out after 1 seconds", QueryExecutionError,
         "Script execution timed out after 1 seconds"),
        ("postgres", "SyntaxError: invalid syntax (script.py, line 2)", QueryExecutionError,
         "Script syntax error: SyntaxError: invalid syntax (script.py, line 2)"),
        ("postgres", 'UndefinedTable: relation "nope" does not exist', QueryExecutionError,
         'SQL Error: UndefinedTable: relation "nope" does not exist'),
        ("postgres", "OperationalError: could not connect to server: Connection refused", InternalError,
         CONNECTION_FAILURE_MESSAGE),
        ("mongodb", "DuplicateKeyError: E11000 duplicate key error", QueryExecutionError,
         "MongoDB Error: DuplicateKeyError: E11000 duplicate key error"),
        ("mongodb", "AutoReconnect: connection refused", InternalError, CONNECTION_FAILURE_MESSAGE),
        ("mongodb", "ServerSelectionTimeoutError: 127.0.0.1:1: [Errno 111] Connection refused", InternalError,
         CONNECTION_FAILURE_MESSAGE),
        ("mongodb", "NetworkTimeout: 10.0.0.5:27017: timed out", QueryExecutionError,
         "NetworkTimeout: 10.0.0.5:27017: timed out"),
        ("postgres", 'SyntaxError: syntax error at or near "SELEC"', QueryExecutionError,
         'SQL Error: SyntaxError: syntax error at or near "SELEC"'),
        ("postgres", "SyntaxError: syntax error at end of input", QueryExecutionError,
         "SQL Error: SyntaxError: syntax error at end of input"),
        ("postgres", "NameError: name 'cursr' is not defined", QueryExecutionError,
         "Script syntax error: NameError: name 'cursr' is not defined"),
        ("mongodb", "ValueError: bad input", QueryExecutionError, "ValueError: bad input"),
        ("postgres", None, QueryExecutionError, "Script execution failed"),
    ],
)
def test_script_failures(family, message, expected_type, expected_message):
    error = classify_script_failure(family, message)

    assert isinstance(error, expected_type)
    assert error.message == expected_message


def test_fault_of():
    assert fault_of(InternalError("x")) is FaultKind.INFRA
    assert fault_of(QueryExecutionError("x")) is FaultKind.USER
    assert fault_of(RuntimeError("x")) is FaultKind.USER


def test_server_selection_failure_is_a_connection_failure():
    error = classify_mongo_error(ServerSelectionTimeoutError("127.0.0.1:1: [Errno 111] Connection refused"))

    assert isinstance(error, InternalError)
    assert error.message == CONNECTION_FAILURE_MESSAGE
    assert "127.0.0.1" not in error.message


def test_mongo_operation_timeout_stays_user_fault():
    error = classify_mongo_error(ExecutionTimeout("Query execution timed out after 30 seconds"))

    assert isinstance(error, QueryExecutionError)
    assert error.message == "Query execution timed out after 30 seconds"
