"""
Execution subsystem: direct query executors, the sandbox bridge and the
dispatcher that chooses between them.
"""

from querygate.config import get_settings

from .base import ExecutionSettings, ExecutionTimeout, run_with_timeout  # noqa: F401
from .dispatcher import ExecutionDispatcher, ExecutionPlan, InstanceDescriptor  # noqa: F401


def get_default_dispatcher() -> ExecutionDispatcher:
    """Dispatcher wired to the real executors and the current Settings."""
    return ExecutionDispatcher(ExecutionSettings.from_settings(get_settings()))
