# backend/querygate/schemas/__init__.py
from __future__ import annotations

"""
Pydantic schemas for request/response models.

This module is the contract layer between the (out-of-scope) HTTP
controllers and the approval state machine. It depends on:
- querygate.models enums

It is used by:
- querygate.services.queries.service for inputs and serialized outputs
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator

from querygate.models import QueryRequest, QueryStatus, SubmissionType


# ---------- Submission ----------


class QuerySubmission(BaseModel):
    """
    Payload accepted by ``QueryService.submit_query``.

    SCRIPT submissions must carry non-blank ``script_content``; QUERY
    submissions must carry non-blank ``query_text``.
    """

    requester_id: str
    instance_id: str
    database_name: str = Field(min_length=1)
    pod_id: str
    submission_type: SubmissionType = SubmissionType.QUERY
    query_text: str | None = None
    script_content: str | None = None
    comments: str | None = None

    @model_validator(mode="after")
    def ensure_payload(self) -> "QuerySubmission":
        if self.submission_type == SubmissionType.SCRIPT:
            if not (self.script_content or "").strip():
                raise ValueError("Script content is required for SCRIPT submission")
        elif not (self.query_text or "").strip():
            raise ValueError("Query text is required for QUERY submission")
        return self


# ---------- Read models ----------


class QueryRequestRead(BaseModel):
    id: str
    requester_id: Optional[str] = None
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    pod_id: Optional[str] = None
    pod_name: Optional[str] = None
    instance_id: Optional[str] = None
    instance_name: Optional[str] = None
    database_type: Optional[str] = None
    database_name: str
    submission_type: SubmissionType
    query_text: str
    script_content: Optional[str] = None
    comments: Optional[str] = None
    status: QueryStatus
    approved_by_id: Optional[str] = None
    approved_by_name: Optional[str] = None
    rejection_reason: Optional[str] = None
    execution_result: Optional[Any] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, query: QueryRequest) -> "QueryRequestRead":
        requester = query.requester
        pod = query.pod
        instance = query.instance
        approver = query.approved_by
        return cls(
            id=query.id,
            requester_id=requester.id if requester else None,
            requester_name=requester.name if requester else None,
            requester_email=requester.email if requester else None,
            pod_id=pod.id if pod else None,
            pod_name=pod.name if pod else None,
            instance_id=instance.id if instance else None,
            instance_name=instance.name if instance else None,
            database_type=instance.type if instance else None,
            database_name=query.database_name,
            submission_type=query.submission_type,
            query_text=query.query_text,
            script_content=query.script_content,
            comments=query.comments,
            status=query.status,
            approved_by_id=approver.id if approver else None,
            approved_by_name=approver.name if approver else None,
            rejection_reason=query.rejection_reason,
            execution_result=query.execution_result,
            created_at=query.created_at,
            updated_at=query.updated_at,
        )


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    hasMore: bool


class PaginatedQueries(BaseModel):
    data: List[QueryRequestRead]
    pagination: Pagination


class ApprovalResult(BaseModel):
    status: QueryStatus
    result: Any = None
