from __future__ import annotations

"""backend/querygate/services/audit.py

Append-only audit trail for query request transitions.

Entries are only ever inserted. Nothing in the approval flow reads them back
to make a decision.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from querygate.models import AuditAction, QueryAuditLog

logger = logging.getLogger(__name__)


def record_audit(
    db: Session,
    query_request_id: str,
    action: AuditAction | str,
    performed_by: str,
    details: Optional[Dict[str, Any]] = None,
) -> QueryAuditLog:
    """Add one audit row to the session.

    The caller owns the transaction; the row is flushed so it gets its id but
    is committed together with the status change it describes.
    """
    row = QueryAuditLog(
        query_request_id=query_request_id,
        action=AuditAction(action),
        performed_by_id=performed_by,
        details=details or {},
    )
    db.add(row)
    db.flush()
    logger.info("Audit %s on query %s by %s", row.action.value, query_request_id, performed_by)
    return row


class AuditLogger:
    """Session-bound ``log(...)`` facade used by the approval state machine."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        *,
        query_request_id: str,
        action: AuditAction | str,
        performed_by: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> QueryAuditLog:
        return record_audit(self.db, query_request_id, action, performed_by, details)
