# backend/querygate/models/__init__.py
from __future__ import annotations

"""
Core ORM models for the query approval backend.

This module depends on:
- querygate.db.session.Base for the declarative base

It is used by:
- querygate.schemas (for enum references)
- the query repository / directory services (for querying and persisting data)
- the approval state machine (for status transitions)

Models:
- User: a requester, pod manager or admin
- Pod: organizational ownership unit with exactly one manager
- DbInstance: connection descriptor for a target Postgres/MongoDB database
- QueryRequest: one proposed query or script and its lifecycle state
- QueryAuditLog: append-only record of one lifecycle transition
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from querygate.db.session import Base


class Role(str, enum.Enum):
    DEVELOPER = "DEVELOPER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"


class DbType(str, enum.Enum):
    POSTGRES = "POSTGRES"
    MONGODB = "MONGODB"


class SubmissionType(str, enum.Enum):
    QUERY = "QUERY"
    SCRIPT = "SCRIPT"


class QueryStatus(str, enum.Enum):
    PENDING = "PENDING"
    # Kept for storage compatibility; no transition ever sets it.
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class AuditAction(str, enum.Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


SCRIPT_PLACEHOLDER = "[SCRIPT SUBMISSION]"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False)
    role = Column(String, nullable=False, default=Role.DEVELOPER.value)
    slack_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    managed_pods = relationship("Pod", back_populates="manager")


class Pod(Base):
    __tablename__ = "pods"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, unique=True, nullable=False)
    manager_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    manager = relationship("User", back_populates="managed_pods")


class DbInstance(Base):
    """
    Target database descriptor.

    Credential columns (username, password, mongo_uri) hold ciphertext when an
    encryption key is configured; they are decrypted on read by
    ``querygate.services.directory.InstanceDirectory``.
    """

    __tablename__ = "db_instances"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    # Plain string rather than Enum so unsupported legacy types still load
    # and are rejected by the dispatcher instead of the ORM.
    type = Column(String, nullable=False)

    host = Column(String, nullable=True)
    port = Column(Integer, nullable=True)
    username = Column(Text, nullable=True)
    password = Column(Text, nullable=True)
    mongo_uri = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class QueryRequest(Base):
    __tablename__ = "query_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    requester_id = Column(String, ForeignKey("users.id"), nullable=False)
    pod_id = Column(String, ForeignKey("pods.id"), nullable=False)
    instance_id = Column(String, ForeignKey("db_instances.id"), nullable=False)

    database_name = Column(String, nullable=False)
    submission_type = Column(Enum(SubmissionType), nullable=False)
    query_text = Column(Text, nullable=False)
    script_content = Column(Text, nullable=True)
    comments = Column(Text, nullable=True)

    status = Column(Enum(QueryStatus), default=QueryStatus.PENDING, nullable=False)
    approved_by_id = Column(String, ForeignKey("users.id"), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Success payload or {"error": message}; set iff status is EXECUTED/FAILED
    execution_result = Column(JSON, nullable=True)

    # Optimistic lock for the PENDING -> terminal transition
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    requester = relationship("User", foreign_keys=[requester_id])
    approved_by = relationship("User", foreign_keys=[approved_by_id])
    pod = relationship("Pod")
    instance = relationship("DbInstance")
    audit_entries = relationship(
        "QueryAuditLog",
        back_populates="query_request",
        order_by="QueryAuditLog.created_at",
    )

    __mapper_args__ = {"version_id_col": version}


class QueryAuditLog(Base):
    """
    Append-only lifecycle record.

    ``details`` is a denormalized snapshot (pod/instance/database names at
    write time) so history survives later renames.
    """

    __tablename__ = "query_audit_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    query_request_id = Column(
        String, ForeignKey("query_requests.id"), nullable=False, index=True
    )
    action = Column(Enum(AuditAction), nullable=False, index=True)
    performed_by_id = Column(String, ForeignKey("users.id"), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    query_request = relationship("QueryRequest", back_populates="audit_entries")
    performed_by = relationship("User")
