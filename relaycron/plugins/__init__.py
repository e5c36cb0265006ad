"""Task groups and their loading.

A :class:`TaskGroup` bundles the tasks automating one external service: a
login procedure, the session lifetime it grants, an ``api`` of helper
coroutines taking the HTTP client as first argument, and the task
definitions themselves. Groups are registered in :data:`registered_groups`
either explicitly, through ``module:attr`` references, or through the
``relaycron.groups`` entry point group.
"""

from __future__ import annotations

import functools
import importlib
from dataclasses import dataclass, field
from importlib import metadata
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

from ..models import TaskKey, TaskResult
from ..notify import TaskLogger
from ..recurrence import RecurrencePolicy
from ..session import LoginCallback


@dataclass
class TaskContext:
    """Everything a task body receives for one invocation."""

    key: TaskKey
    identity: str
    client: httpx.AsyncClient
    api: Dict[str, Callable[..., Awaitable[Any]]]
    logger: TaskLogger
    public: Mapping[str, Any] = field(default_factory=dict)


TaskBody = Callable[[TaskContext], Awaitable[Optional[TaskResult]]]


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    body: TaskBody
    recurrence: RecurrencePolicy


@dataclass(frozen=True)
class LoginSpec:
    callback: LoginCallback
    lifetime: int  # milliseconds


@dataclass(frozen=True)
class TaskGroup:
    name: str
    login: LoginSpec
    tasks: Sequence[TaskDefinition]
    api: Mapping[str, Callable[..., Awaitable[Any]]] = field(default_factory=dict)
    public: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name or "/" in self.name:
            raise ValueError(f"Invalid task group name: {self.name!r}")
        seen: set[str] = set()
        for task in self.tasks:
            if task.name in seen:
                raise ValueError(f"{self.name}: duplicate task name {task.name!r}")
            seen.add(task.name)
        object.__setattr__(self, "tasks", tuple(self.tasks))

    def keyed_tasks(self) -> List[Tuple[TaskKey, TaskDefinition]]:
        return [
            (TaskKey(group=self.name, name=task.name, index=index), task)
            for index, task in enumerate(self.tasks)
        ]

    def bind_api(self, client: httpx.AsyncClient) -> Dict[str, Callable[..., Awaitable[Any]]]:
        """Return the group api with ``client`` bound as first argument."""

        return {name: functools.partial(func, client) for name, func in self.api.items()}


registered_groups: Dict[str, TaskGroup] = {}


def register_group(group: TaskGroup) -> TaskGroup:
    """Register ``group`` under its name, replacing any previous one."""

    registered_groups[group.name] = group
    return group


def load_group(path: str) -> TaskGroup:
    """Load ``path`` of the form ``module:attr``.

    ``attr`` may be a :class:`TaskGroup` or a callable returning one.
    """

    module_path, attr = path.split(":")
    module = importlib.import_module(module_path)
    obj = getattr(module, attr)
    if not isinstance(obj, TaskGroup) and callable(obj):
        obj = obj()
    if not isinstance(obj, TaskGroup):
        raise TypeError(f"{path} is not a TaskGroup")
    return obj


def load_entrypoint_groups() -> List[TaskGroup]:
    """Load groups exposed via ``relaycron.groups`` entry points."""

    groups = []
    for ep in metadata.entry_points().select(group="relaycron.groups"):
        group = register_group(load_group(ep.value))
        groups.append(group)
    return groups


def initialize(paths: Sequence[str] = ()) -> List[TaskGroup]:
    """Register groups from ``paths`` and entry points; return all groups."""

    for path in paths:
        register_group(load_group(path))
    load_entrypoint_groups()
    return list(registered_groups.values())


__all__ = [
    "LoginSpec",
    "TaskBody",
    "TaskContext",
    "TaskDefinition",
    "TaskGroup",
    "initialize",
    "load_entrypoint_groups",
    "load_group",
    "register_group",
    "registered_groups",
]
