from __future__ import annotations

"""backend/querygate/services/queries/service.py

Approval state machine for query requests.

    PENDING --approve--> EXECUTED | FAILED
    PENDING --reject---> REJECTED

Every transition is recorded in the audit log in the same transaction as
the status change. Notifications and analytics fire after the commit and
are best-effort: their failures are logged and never change the outcome.

approve:
  structural checks (not found / not pending / bad instance config) abort
  before anything is written. Once the dispatcher runs, the outcome is
  always persisted: success -> EXECUTED with the result snapshot; failure ->
  FAILED with {"error": message}, then the original error is re-raised.

reject:
  only an ADMIN, or the MANAGER of the request's pod, may reject.

Reads are role-scoped: requesters see their own requests, managers the
requests in pods they manage, admins everything.
"""

import logging
from typing import Any, Callable, Dict, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.orm import Session

from querygate import models
from querygate.config import Settings, get_settings
from querygate.errors import (
    AppError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from querygate.schemas import (
    ApprovalResult,
    PaginatedQueries,
    Pagination,
    QueryRequestRead,
    QuerySubmission,
)
from querygate.services.audit import AuditLogger
from querygate.services.diagnostics.error_classifier import fault_of
from querygate.services.directory import InstanceDirectory, UserDirectory
from querygate.services.execution.dispatcher import ExecutionDispatcher
from querygate.services.notifications import NotificationSink, NullNotifier, QueryInfo
from querygate.services.queries.repository import QueryFilters, QueryRepository
from querygate.services.statsig_client import (
    QUERY_EXECUTED,
    QUERY_FAILED,
    QUERY_REJECTED,
    QUERY_SUBMITTED,
    log_query_event,
)

logger = logging.getLogger(__name__)

EventLogger = Callable[..., None]


def _role(value: models.Role | str | None) -> Optional[models.Role]:
    try:
        return models.Role(value)
    except ValueError:
        return None


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, AppError):
        return exc.message
    return str(exc).strip() or type(exc).__name__


class QueryService:
    def __init__(
        self,
        db: Session,
        *,
        dispatcher: ExecutionDispatcher,
        notifier: NotificationSink | None = None,
        audit: AuditLogger | None = None,
        users: UserDirectory | None = None,
        instances: InstanceDirectory | None = None,
        settings: Settings | None = None,
        events: EventLogger = log_query_event,
    ) -> None:
        self.db = db
        self.dispatcher = dispatcher
        self.notifier = notifier or NullNotifier()
        self.audit = audit or AuditLogger(db)
        self.users = users or UserDirectory(db)
        self.instances = instances or InstanceDirectory(db)
        self.settings = settings or get_settings()
        self.events = events
        self.repo = QueryRepository(db)

    # ---- side channels --------------------------------------------------

    def _notify(self, method: str, *args: Any) -> None:
        try:
            getattr(self.notifier, method)(*args)
        except Exception as exc:  # noqa: BLE001
            logger.error("Slack notification failed: %s", exc)

    def _track(self, event_name: str, user_id: str, query: models.QueryRequest, **metadata: Any) -> None:
        try:
            self.events(
                event_name,
                user_id=user_id,
                query_id=query.id,
                metadata={
                    "submission_type": query.submission_type.value,
                    "database_type": query.instance.type if query.instance else None,
                    **metadata,
                },
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("Analytics event %s failed: %s", event_name, exc)

    @staticmethod
    def _snapshot(query: models.QueryRequest, **extra: Any) -> Dict[str, Any]:
        details = {
            "pod_name": query.pod.name if query.pod else None,
            "instance_name": query.instance.name if query.instance else None,
            "database_name": query.database_name,
            "submission_type": query.submission_type.value,
        }
        details.update(extra)
        return details

    @staticmethod
    def _info(query: models.QueryRequest) -> QueryInfo:
        requester = query.requester
        return QueryInfo(
            id=query.id,
            requester_name=requester.name if requester else "Unknown",
            requester_email=requester.email if requester else "",
            requester_slack_id=requester.slack_id if requester else None,
            database_name=query.database_name,
            instance_name=query.instance.name if query.instance else "Unknown",
            pod_id=query.pod.name if query.pod else query.pod_id,
            submission_type=query.submission_type.value,
            query_text=query.query_text,
            script_content=query.script_content,
            comments=query.comments,
        )

    def _actor_name(self, actor_id: str) -> str:
        actor = self.users.find_by_id(actor_id)
        return actor.name if actor else actor_id

    def _load(self, query_id: str) -> models.QueryRequest:
        query = self.repo.get(query_id)
        if query is None:
            raise NotFoundError("Query not found")
        return query

    # ---- transitions ----------------------------------------------------

    def submit_query(self, payload: QuerySubmission | Dict[str, Any]) -> QueryRequestRead:
        if not isinstance(payload, QuerySubmission):
            try:
                payload = QuerySubmission.model_validate(payload)
            except ValidationError as exc:
                first = exc.errors()[0]
                raise BadRequestError(str(first.get("msg", "Invalid submission"))) from None

        if self.users.find_by_id(payload.requester_id) is None:
            raise NotFoundError("User not found")
        if self.users.find_pod(payload.pod_id) is None:
            raise NotFoundError("POD not found")
        if self.instances.find_model(payload.instance_id) is None:
            raise NotFoundError("DB instance not found")

        is_script = payload.submission_type == models.SubmissionType.SCRIPT
        query = self.repo.create(
            requester_id=payload.requester_id,
            pod_id=payload.pod_id,
            instance_id=payload.instance_id,
            database_name=payload.database_name,
            submission_type=payload.submission_type,
            query_text=models.SCRIPT_PLACEHOLDER if is_script else payload.query_text,
            script_content=payload.script_content if is_script else None,
            comments=payload.comments,
        )
        self.db.refresh(query)
        self.audit.log(
            query_request_id=query.id,
            action=models.AuditAction.SUBMITTED,
            performed_by=payload.requester_id,
            details=self._snapshot(query),
        )
        self.db.commit()
        logger.info("Query %s submitted by %s", query.id, payload.requester_id)

        self._notify("notify_new_submission", self._info(query))
        self._track(QUERY_SUBMITTED, payload.requester_id, query)
        return QueryRequestRead.from_model(query)

    def approve_query(self, query_id: str, approver_id: str) -> ApprovalResult:
        query = self._load(query_id)
        if query.status != models.QueryStatus.PENDING:
            raise ConflictError("Query already processed")

        instance = self.instances.find_by_id(query.instance_id)
        if instance is None:
            raise NotFoundError("DB instance not found")

        plan = self.dispatcher.prepare(
            instance,
            query.submission_type,
            query_text=query.query_text,
            script_content=query.script_content,
            database_name=query.database_name,
        )
        approver_name = self._actor_name(approver_id)
        logger.info("Executing query %s via %s (approved by %s)", query.id, plan.path, approver_id)

        try:
            result = plan.run()
        except Exception as exc:
            message = _error_message(exc)
            fault = fault_of(exc)
            logger.warning("Query %s failed (%s): %s", query.id, fault.value, message)
            self.repo.mark_failed(query, approver_id, message)
            self.audit.log(
                query_request_id=query.id,
                action=models.AuditAction.FAILED,
                performed_by=approver_id,
                details=self._snapshot(query, error=message, fault=fault.value),
            )
            self.db.commit()
            self._notify("notify_execution_failure", self._info(query), message, approver_name)
            self._track(QUERY_FAILED, approver_id, query, fault=fault.value)
            raise

        self.repo.mark_executed(query, approver_id, result)
        self.audit.log(
            query_request_id=query.id,
            action=models.AuditAction.EXECUTED,
            performed_by=approver_id,
            details=self._snapshot(query),
        )
        self.db.commit()
        logger.info("Query %s executed", query.id)

        self._notify("notify_execution_success", self._info(query), result, approver_name)
        self._track(QUERY_EXECUTED, approver_id, query)
        return ApprovalResult(status=models.QueryStatus.EXECUTED, result=result)

    def reject_query(
        self,
        query_id: str,
        actor_id: str,
        actor_role: models.Role | str,
        reason: Optional[str] = None,
    ) -> QueryRequestRead:
        query = self._load(query_id)

        role = _role(actor_role)
        if role is not models.Role.ADMIN:
            if role is not models.Role.MANAGER or not self.users.is_manager_of_pod(actor_id, query.pod_id):
                raise ForbiddenError("Not authorized to reject this request")

        if query.status != models.QueryStatus.PENDING:
            raise ConflictError("Query already processed")

        self.repo.mark_rejected(query, actor_id, reason)
        self.audit.log(
            query_request_id=query.id,
            action=models.AuditAction.REJECTED,
            performed_by=actor_id,
            details=self._snapshot(query, reason=reason),
        )
        self.db.commit()
        logger.info("Query %s rejected by %s", query.id, actor_id)

        self._notify("notify_rejection", self._info(query), reason, self._actor_name(actor_id))
        self._track(QUERY_REJECTED, actor_id, query)
        return QueryRequestRead.from_model(query)

    # ---- reads ----------------------------------------------------------

    def _filters(
        self,
        status: Optional[Sequence[models.QueryStatus | str]],
        database_type: Optional[models.DbType | str],
        limit: Optional[int],
        offset: int,
    ) -> QueryFilters:
        if limit is None:
            limit = self.settings.default_page_size
        if limit < 1:
            raise BadRequestError("limit must be at least 1")
        if offset < 0:
            raise BadRequestError("offset must not be negative")
        if isinstance(status, str):
            status = [status]
        return QueryFilters(
            statuses=list(status or []),
            database_type=database_type,
            limit=min(limit, self.settings.max_page_size),
            offset=offset,
        )

    @staticmethod
    def _envelope(rows, total: int, filters: QueryFilters) -> PaginatedQueries:
        return PaginatedQueries(
            data=[QueryRequestRead.from_model(row) for row in rows],
            pagination=Pagination(
                total=total,
                limit=filters.limit,
                offset=filters.offset,
                hasMore=filters.offset + filters.limit < total,
            ),
        )

    def get_queries_by_user(
        self,
        user_id: str,
        *,
        status: Optional[Sequence[models.QueryStatus | str]] = None,
        database_type: Optional[models.DbType | str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> PaginatedQueries:
        filters = self._filters(status, database_type, limit, offset)
        rows, total = self.repo.list_by_requester(user_id, filters)
        return self._envelope(rows, total, filters)

    def get_queries_for_manager(
        self,
        manager_id: str,
        *,
        status: Optional[Sequence[models.QueryStatus | str]] = None,
        database_type: Optional[models.DbType | str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> PaginatedQueries:
        filters = self._filters(status, database_type, limit, offset)
        pod_ids = self.users.get_managed_pod_ids(manager_id)
        rows, total = self.repo.list_by_pods(pod_ids, filters)
        return self._envelope(rows, total, filters)

    def get_all_queries(
        self,
        *,
        status: Optional[Sequence[models.QueryStatus | str]] = None,
        database_type: Optional[models.DbType | str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> PaginatedQueries:
        filters = self._filters(status, database_type, limit, offset)
        rows, total = self.repo.list_all(filters)
        return self._envelope(rows, total, filters)

    def list_visible_queries(
        self,
        actor_id: str,
        actor_role: models.Role | str,
        **filters: Any,
    ) -> PaginatedQueries:
        """Route to the list an actor of ``actor_role`` is allowed to see."""
        role = _role(actor_role)
        if role is models.Role.ADMIN:
            return self.get_all_queries(**filters)
        if role is models.Role.MANAGER:
            return self.get_queries_for_manager(actor_id, **filters)
        return self.get_queries_by_user(actor_id, **filters)

    def get_query_by_id(
        self,
        query_id: str,
        actor_id: str,
        actor_role: models.Role | str,
    ) -> QueryRequestRead:
        query = self._load(query_id)
        role = _role(actor_role)

        if role is models.Role.ADMIN:
            return QueryRequestRead.from_model(query)

        is_own = query.requester is not None and query.requester.id == actor_id
        if role is models.Role.MANAGER:
            if not is_own and not (
                query.pod is not None and self.users.is_manager_of_pod(actor_id, query.pod.id)
            ):
                raise ForbiddenError("You can only view queries for your PODs")
        elif not is_own:
            raise ForbiddenError("You can only view your own queries")

        return QueryRequestRead.from_model(query)
