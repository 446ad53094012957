from __future__ import annotations

"""
Diagnostics and error classification utilities.

This package currently provides:
- error_classifier: map native Postgres / MongoDB / sandbox failures onto a
  two-way taxonomy (user-fault vs infra-fault) and the matching AppError.

The goal is to keep error handling logic centralized and deterministic.
"""

from .error_classifier import (  # noqa: F401
    Classification,
    FaultKind,
    classify_mongo_error,
    classify_postgres_error,
    classify_script_failure,
    classify_signature,
    fault_of,
)
