"""relaycron package root.

Runs periodic automations against external HTTP services for one or more
identities, executing every task body through a single serialized queue and
persisting each task's next due date so restarts resume exactly the tasks
that are due.
"""

from .scheduler import (
    SchedulerService,
    TaskScheduler,
    create_service,
    get_default_service,
    set_default_service,
)
from . import plugins  # noqa: F401
from . import metrics  # noqa: F401
from .config import load_config
from .models import TaskKey, TaskResult
from .plugins import LoginSpec, TaskContext, TaskDefinition, TaskGroup
from .recurrence import CallablePolicy, CronJitter, FixedRange, to_milliseconds


def initialize(config_path: str | None = None) -> SchedulerService:
    """Load configuration and groups, then install the default service."""

    cfg = load_config(config_path)
    service = create_service(cfg)
    set_default_service(service)
    return service


from . import cli  # noqa: F401,E402


__all__ = [
    "CallablePolicy",
    "CronJitter",
    "FixedRange",
    "LoginSpec",
    "SchedulerService",
    "TaskContext",
    "TaskDefinition",
    "TaskGroup",
    "TaskKey",
    "TaskResult",
    "TaskScheduler",
    "cli",
    "create_service",
    "get_default_service",
    "initialize",
    "load_config",
    "metrics",
    "plugins",
    "set_default_service",
    "to_milliseconds",
]
