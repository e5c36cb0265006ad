"""Notification sink for task outcomes.

Every message has a plain-text and a markdown rendering so chat-style sinks
can format it while log files stay readable.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Iterable, List, Optional

import httpx

from .http_utils import describe_http_error, request_with_retry_async

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    severity: Severity
    plain: str
    markdown: str
    group: Optional[str] = None
    task: Optional[str] = None
    identity: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


class Notifier:
    """Base class for notification sinks."""

    async def notify(self, notification: Notification) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Write notifications to the standard logging tree."""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.SUCCESS: logging.INFO,
        Severity.ERROR: logging.ERROR,
    }

    def __init__(self, name: str = "relaycron.tasks") -> None:
        self._logger = logging.getLogger(name)

    async def notify(self, notification: Notification) -> None:
        prefix = "/".join(
            part for part in (notification.identity, notification.group, notification.task) if part
        )
        self._logger.log(
            self._LEVELS[notification.severity],
            "[%s] %s%s",
            notification.severity.value,
            f"{prefix}: " if prefix else "",
            notification.plain,
        )


class WebhookNotifier(Notifier):
    """POST notifications as JSON to ``url``."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self._client = client

    async def notify(self, notification: Notification) -> None:
        try:
            await request_with_retry_async(
                "POST",
                self.url,
                timeout=self.timeout,
                retries=self.retries,
                client=self._client,
                json=notification.to_dict(),
            )
        except httpx.HTTPError as exc:
            logger.error("Webhook notification to %s failed: %s", self.url, exc)


class MultiNotifier(Notifier):
    """Fan a notification out to several sinks."""

    def __init__(self, notifiers: Iterable[Notifier]) -> None:
        self.notifiers: List[Notifier] = list(notifiers)

    async def notify(self, notification: Notification) -> None:
        for notifier in self.notifiers:
            await safe_notify(notifier, notification)


async def safe_notify(notifier: Notifier, notification: Notification) -> None:
    """Deliver ``notification`` without letting sink failures escape."""

    try:
        await notifier.notify(notification)
    except Exception:
        logger.exception("Notifier %r failed", notifier)


def error_notification(task_name: str, error: BaseException) -> tuple[str, str]:
    """Render ``error`` raised by ``task_name`` as ``(plain, markdown)``."""

    if isinstance(error, httpx.HTTPError):
        message = json.dumps(describe_http_error(error), ensure_ascii=False)
        return (
            f"Task |{task_name}| was executed with error.\nMessage: {message}",
            f"Task |{task_name}| was executed with error.```Message: {message}```",
        )
    message = str(error) or error.__class__.__name__
    return (
        f"An unhandled error occurs in |{task_name}|.\nMessage: {message}",
        f"An unhandled error occurs in |{task_name}|.```Message: {message}```",
    )


class TaskLogger:
    """Notification helper handed to task bodies."""

    def __init__(
        self,
        notifier: Notifier,
        *,
        group: Optional[str] = None,
        task: Optional[str] = None,
        identity: Optional[str] = None,
    ) -> None:
        self._notifier = notifier
        self.group = group
        self.task = task
        self.identity = identity

    async def emit(self, severity: Severity, plain: str, markdown: Optional[str] = None) -> None:
        await safe_notify(
            self._notifier,
            Notification(
                severity=severity,
                plain=plain,
                markdown=markdown if markdown is not None else plain,
                group=self.group,
                task=self.task,
                identity=self.identity,
            ),
        )

    async def info(self, plain: str, markdown: Optional[str] = None) -> None:
        await self.emit(Severity.INFO, plain, markdown)

    async def success(self, plain: str, markdown: Optional[str] = None) -> None:
        await self.emit(Severity.SUCCESS, plain, markdown)

    async def error(self, plain: str, markdown: Optional[str] = None) -> None:
        await self.emit(Severity.ERROR, plain, markdown)


def build_notifier(webhook_url: Optional[str] = None) -> Notifier:
    if webhook_url:
        return MultiNotifier([LoggingNotifier(), WebhookNotifier(webhook_url)])
    return LoggingNotifier()
