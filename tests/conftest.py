"""Shared fixtures.

- db_session: SQLite in-memory session with all tables created
- seed: users, pods and instances the scenarios refer to by id
- executors: MagicMock executors plugged into a real ExecutionDispatcher
- notifier: records every notification call
- service: QueryService wired to the above
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from querygate import models
from querygate.config import Settings
from querygate.db.session import Base
from querygate.services.credentials import CredentialCipher
from querygate.services.directory import InstanceDirectory
from querygate.services.execution import ExecutionDispatcher, ExecutionSettings
from querygate.services.queries import QueryService


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        slack_enabled=False,
        statsig_server_secret=None,
        encryption_key=None,
        default_page_size=20,
        max_page_size=50,
    )


@pytest.fixture()
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def seed(db_session):
    users = [
        models.User(id="dev-1", name="Dana Dev", email="dana@example.com", role="DEVELOPER", slack_id="U-DANA"),
        models.User(id="dev-2", name="Sam Dev", email="sam@example.com", role="DEVELOPER"),
        models.User(id="mgr-a", name="Alex Manager", email="alex@example.com", role="MANAGER"),
        models.User(id="mgr-b", name="Blair Manager", email="blair@example.com", role="MANAGER"),
        models.User(id="admin-1", name="Ari Admin", email="ari@example.com", role="ADMIN"),
    ]
    pods = [
        models.Pod(id="pod-a", name="payments", manager_id="mgr-a"),
        models.Pod(id="pod-b", name="search", manager_id="mgr-b"),
    ]
    instances = [
        models.DbInstance(
            id="i1",
            name="orders-pg",
            type="POSTGRES",
            host="pg.internal",
            port=5432,
            username="reader",
            password="s3cret",
        ),
        models.DbInstance(id="m1", name="events-mongo", type="MONGODB", mongo_uri="mongodb://mongo.internal:27017"),
        models.DbInstance(id="i-broken", name="half-configured", type="POSTGRES", host="pg.internal", port=5432),
        models.DbInstance(id="x1", name="legacy-mysql", type="MYSQL", host="mysql.internal", port=3306),
    ]
    db_session.add_all(users)
    db_session.flush()
    db_session.add_all(pods + instances)
    db_session.commit()
    return {"users": users, "pods": pods, "instances": instances}


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify_new_submission(self, info):
        self.calls.append(("new_submission", info))

    def notify_execution_success(self, info, result, approver_name):
        self.calls.append(("execution_success", info, result, approver_name))

    def notify_execution_failure(self, info, error, approver_name):
        self.calls.append(("execution_failure", info, error, approver_name))

    def notify_rejection(self, info, reason, rejecter_name):
        self.calls.append(("rejection", info, reason, rejecter_name))

    def names(self):
        return [call[0] for call in self.calls]


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def executors():
    return MagicMock(name="executors")


@pytest.fixture()
def dispatcher(executors):
    return ExecutionDispatcher(
        ExecutionSettings(),
        postgres_query=executors.postgres_query,
        mongo_query=executors.mongo_query,
        postgres_script=executors.postgres_script,
        mongo_script=executors.mongo_script,
    )


@pytest.fixture()
def events():
    return MagicMock(name="events")


@pytest.fixture()
def service(db_session, seed, dispatcher, notifier, settings, events):
    return QueryService(
        db_session,
        dispatcher=dispatcher,
        notifier=notifier,
        instances=InstanceDirectory(db_session, CredentialCipher(None)),
        settings=settings,
        events=events,
    )


@pytest.fixture()
def submit(service):
    """Submit a QUERY (or SCRIPT, via overrides) and return its id."""

    def _submit(**overrides):
        payload = {
            "requester_id": "dev-1",
            "instance_id": "i1",
            "database_name": "prod",
            "pod_id": "pod-a",
            "submission_type": "QUERY",
            "query_text": "SELECT 1",
        }
        payload.update(overrides)
        return service.submit_query(payload).id

    return _submit
