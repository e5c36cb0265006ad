"""Keys, persisted records and task results shared across relaycron."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Accepts ISO 8601 strings (as written by :meth:`datetime.isoformat`) and
    datetimes. Naive values are assumed to be UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True, order=True)
class TaskKey:
    """Stable identifier of a task inside its group.

    The index is the position of the task in the group definition, so keys
    survive restarts as long as tasks are not reordered.
    """

    group: str
    name: str
    index: int

    def __str__(self) -> str:
        return f"{self.group}/{self.name}/{self.index}"

    @classmethod
    def parse(cls, raw: str) -> "TaskKey":
        group, rest = raw.split("/", 1)
        name, index = rest.rsplit("/", 1)
        return cls(group=group, name=name, index=int(index))


@dataclass(frozen=True)
class SessionRecord:
    """Cached credential material for one identity."""

    headers: Dict[str, str]
    expiration_date: datetime
    base_url: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expiration_date <= now

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "expiration_date": self.expiration_date.isoformat(),
            "headers": dict(self.headers),
        }
        if self.base_url:
            data["base_url"] = self.base_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        headers = data.get("headers") or {}
        if not isinstance(headers, dict):
            raise ValueError("session headers must be a mapping")
        return cls(
            headers={str(k): str(v) for k, v in headers.items()},
            expiration_date=parse_timestamp(data["expiration_date"]),
            base_url=data.get("base_url") or None,
        )


@dataclass(frozen=True)
class TaskRuntimeRecord:
    next_execution_date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"next_execution_date": self.next_execution_date.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskRuntimeRecord":
        return cls(next_execution_date=parse_timestamp(data["next_execution_date"]))


@dataclass(frozen=True)
class TaskResult:
    """Value a task body may return.

    ``extra_restart_timeout`` (milliseconds) replaces the recurrence policy
    for the next scheduling decision only.
    """

    extra_restart_timeout: Optional[int] = None


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskOutcome:
    status: OutcomeStatus
    override_delay: Optional[int] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, override_delay: Optional[int] = None) -> "TaskOutcome":
        return cls(OutcomeStatus.SUCCESS, override_delay=override_delay)

    @classmethod
    def skipped(cls) -> "TaskOutcome":
        return cls(OutcomeStatus.SKIPPED)

    @classmethod
    def failed(cls, error: BaseException) -> "TaskOutcome":
        return cls(OutcomeStatus.FAILED, error=error)


__all__ = [
    "OutcomeStatus",
    "SessionRecord",
    "TaskKey",
    "TaskOutcome",
    "TaskResult",
    "TaskRuntimeRecord",
    "parse_timestamp",
    "utcnow",
]
