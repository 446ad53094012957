from __future__ import annotations

"""backend/querygate/services/queries/repository.py

Persistence helpers for QueryRequest rows.

Terminal writes (EXECUTED / FAILED / REJECTED) go through ``_finalize``,
which flushes immediately. The ``version`` column turns the flush into a
compare-and-swap: if another transaction finalized the row after it was
loaded, SQLAlchemy raises StaleDataError and the write becomes a
ConflictError.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Query, Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from querygate import models
from querygate.errors import BadRequestError, ConflictError

logger = logging.getLogger(__name__)


@dataclass
class QueryFilters:
    statuses: Sequence[models.QueryStatus | str] = field(default_factory=list)
    database_type: Optional[models.DbType | str] = None
    limit: int = 20
    offset: int = 0


def _coerce_statuses(values: Sequence[models.QueryStatus | str]) -> List[models.QueryStatus]:
    try:
        return [models.QueryStatus(value) for value in values]
    except ValueError as exc:
        raise BadRequestError(f"Invalid status filter: {exc}") from None


def _coerce_type(value: models.DbType | str) -> str:
    try:
        return models.DbType(value).value
    except ValueError:
        raise BadRequestError(f"Invalid database type filter: {value}") from None


class QueryRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ---- writes ---------------------------------------------------------

    def create(
        self,
        *,
        requester_id: str,
        pod_id: str,
        instance_id: str,
        database_name: str,
        submission_type: models.SubmissionType,
        query_text: str,
        script_content: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> models.QueryRequest:
        query = models.QueryRequest(
            requester_id=requester_id,
            pod_id=pod_id,
            instance_id=instance_id,
            database_name=database_name,
            submission_type=submission_type,
            query_text=query_text,
            script_content=script_content,
            comments=comments,
            status=models.QueryStatus.PENDING,
        )
        self.db.add(query)
        self.db.flush()
        return query

    def _finalize(self, query: models.QueryRequest, **changes: Any) -> models.QueryRequest:
        for name, value in changes.items():
            setattr(query, name, value)
        try:
            self.db.flush()
        except StaleDataError:
            self.db.rollback()
            logger.warning("Query %s was finalized concurrently", query.id)
            raise ConflictError("Query already processed") from None
        return query

    def mark_executed(self, query: models.QueryRequest, approver_id: str, result: Any) -> models.QueryRequest:
        return self._finalize(
            query,
            status=models.QueryStatus.EXECUTED,
            approved_by_id=approver_id,
            execution_result=result,
        )

    def mark_failed(self, query: models.QueryRequest, approver_id: str, error: str) -> models.QueryRequest:
        return self._finalize(
            query,
            status=models.QueryStatus.FAILED,
            approved_by_id=approver_id,
            execution_result={"error": error},
        )

    def mark_rejected(
        self, query: models.QueryRequest, actor_id: str, reason: Optional[str]
    ) -> models.QueryRequest:
        return self._finalize(
            query,
            status=models.QueryStatus.REJECTED,
            approved_by_id=actor_id,
            rejection_reason=reason,
        )

    # ---- reads ----------------------------------------------------------

    def _base(self) -> Query:
        return self.db.query(models.QueryRequest).options(
            joinedload(models.QueryRequest.requester),
            joinedload(models.QueryRequest.pod),
            joinedload(models.QueryRequest.instance),
            joinedload(models.QueryRequest.approved_by),
        )

    def get(self, query_id: str) -> Optional[models.QueryRequest]:
        return self._base().filter(models.QueryRequest.id == query_id).one_or_none()

    def _page(self, criteria: list, filters: QueryFilters) -> Tuple[List[models.QueryRequest], int]:
        criteria = list(criteria)
        if filters.statuses:
            criteria.append(models.QueryRequest.status.in_(_coerce_statuses(filters.statuses)))
        if filters.database_type:
            criteria.append(
                models.QueryRequest.instance_id.in_(
                    select(models.DbInstance.id).where(
                        models.DbInstance.type == _coerce_type(filters.database_type)
                    )
                )
            )
        total = self.db.query(models.QueryRequest).filter(*criteria).count()
        rows = (
            self._base()
            .filter(*criteria)
            .order_by(models.QueryRequest.created_at.desc(), models.QueryRequest.id.desc())
            .offset(filters.offset)
            .limit(filters.limit)
            .all()
        )
        return rows, total

    def list_by_requester(self, requester_id: str, filters: QueryFilters):
        return self._page([models.QueryRequest.requester_id == requester_id], filters)

    def list_by_pods(self, pod_ids: Sequence[str], filters: QueryFilters):
        if not pod_ids:
            return [], 0
        return self._page([models.QueryRequest.pod_id.in_(list(pod_ids))], filters)

    def list_all(self, filters: QueryFilters):
        return self._page([], filters)
