"""
Query request lifecycle: repository and approval state machine.
"""

from sqlalchemy.orm import Session

from querygate.config import get_settings
from querygate.services.execution import get_default_dispatcher
from querygate.services.notifications import build_notifier

from .repository import QueryFilters, QueryRepository  # noqa: F401
from .service import QueryService  # noqa: F401


def build_query_service(db: Session) -> QueryService:
    """QueryService wired to the configured executors, Slack and the given session."""
    settings = get_settings()
    return QueryService(
        db,
        dispatcher=get_default_dispatcher(),
        notifier=build_notifier(settings),
        settings=settings,
    )
