from datetime import datetime, timedelta

import pytest

from querygate import models
from querygate.errors import BadRequestError, ForbiddenError, NotFoundError


@pytest.fixture()
def populated(service, submit, executors, db_session):
    """Five requests across two pods and two instance types, oldest first."""
    executors.postgres_query.return_value = {"rows": [], "rowCount": 0}
    ids = [
        submit(),
        submit(),
        submit(pod_id="pod-b", requester_id="dev-2"),
        submit(instance_id="m1", query_text="db.events.find({})"),
        submit(pod_id="pod-b"),
    ]
    base = datetime(2024, 1, 1)
    for offset, query_id in enumerate(ids):
        db_session.get(models.QueryRequest, query_id).created_at = base + timedelta(minutes=offset)
    db_session.commit()
    service.approve_query(ids[0], "mgr-a")
    service.reject_query(ids[4], "mgr-b", "MANAGER", "no")
    return ids


def test_user_sees_only_own_requests_newest_first(service, populated):
    page = service.get_queries_by_user("dev-1")

    assert [row.id for row in page.data] == [populated[4], populated[3], populated[1], populated[0]]
    assert page.pagination.total == 4
    assert page.pagination.hasMore is False


def test_manager_sees_requests_in_managed_pods(service, populated):
    page = service.get_queries_for_manager("mgr-b")

    assert {row.id for row in page.data} == {populated[2], populated[4]}
    assert {row.pod_name for row in page.data} == {"search"}


def test_manager_without_pods_sees_nothing(service, populated):
    page = service.get_queries_for_manager("dev-1")

    assert page.data == []
    assert page.pagination.total == 0


def test_status_and_type_filters(service, populated):
    pending = service.get_all_queries(status=["PENDING"])
    mongo = service.get_all_queries(database_type="MONGODB")
    done = service.get_all_queries(status=[models.QueryStatus.EXECUTED, models.QueryStatus.REJECTED])

    assert {row.id for row in pending.data} == {populated[1], populated[2], populated[3]}
    assert [row.id for row in mongo.data] == [populated[3]]
    assert mongo.data[0].database_type == "MONGODB"
    assert {row.status for row in done.data} == {models.QueryStatus.EXECUTED, models.QueryStatus.REJECTED}


def test_pagination_envelope(service, populated):
    first = service.get_all_queries(limit=2)
    last = service.get_all_queries(limit=2, offset=4)

    assert first.pagination.model_dump() == {"total": 5, "limit": 2, "offset": 0, "hasMore": True}
    assert [row.id for row in first.data] == [populated[4], populated[3]]
    assert last.pagination.hasMore is False
    assert [row.id for row in last.data] == [populated[0]]


def test_page_size_is_capped(service, populated, settings):
    page = service.get_all_queries(limit=1000)

    assert page.pagination.limit == settings.max_page_size


@pytest.mark.parametrize(
    "kwargs",
    [{"limit": 0}, {"offset": -1}, {"status": ["DONE"]}, {"database_type": "REDIS"}],
)
def test_invalid_filters_are_bad_requests(service, populated, kwargs):
    with pytest.raises(BadRequestError):
        service.get_all_queries(**kwargs)


def test_list_visible_routes_by_role(service, populated):
    assert service.list_visible_queries("admin-1", "ADMIN").pagination.total == 5
    assert service.list_visible_queries("mgr-a", "MANAGER").pagination.total == 3
    assert service.list_visible_queries("dev-2", "DEVELOPER").pagination.total == 1


def test_executed_record_is_flattened(service, populated):
    record = service.get_query_by_id(populated[0], "admin-1", "ADMIN")

    assert record.status == models.QueryStatus.EXECUTED
    assert record.approved_by_id == "mgr-a"
    assert record.approved_by_name == "Alex Manager"
    assert record.requester_email == "dana@example.com"
    assert record.instance_name == "orders-pg"
    assert record.execution_result == {"rows": [], "rowCount": 0}


def test_requester_can_read_own_request_only(service, populated):
    assert service.get_query_by_id(populated[2], "dev-2", "DEVELOPER").id == populated[2]

    with pytest.raises(ForbiddenError, match="You can only view your own queries"):
        service.get_query_by_id(populated[0], "dev-2", "DEVELOPER")


def test_manager_reads_are_scoped_to_their_pods(service, populated):
    assert service.get_query_by_id(populated[2], "mgr-b", "MANAGER").pod_name == "search"

    with pytest.raises(ForbiddenError, match="You can only view queries for your PODs"):
        service.get_query_by_id(populated[2], "mgr-a", "MANAGER")


def test_get_unknown_query_is_not_found(service, populated):
    with pytest.raises(NotFoundError):
        service.get_query_by_id("missing", "admin-1", "ADMIN")
