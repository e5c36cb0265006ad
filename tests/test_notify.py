import logging

import httpx
import pytest

from relaycron.notify import (
    LoggingNotifier,
    MultiNotifier,
    Notification,
    Notifier,
    Severity,
    TaskLogger,
    WebhookNotifier,
    build_notifier,
    error_notification,
)
from tests.utils.groups import RecordingNotifier


def test_error_notification_for_http_errors():
    request = httpx.Request("POST", "https://api.example.test/claim")
    response = httpx.Response(425, content=b"too early", request=request)
    error = httpx.HTTPStatusError("425 Too Early", request=request, response=response)

    plain, markdown = error_notification("Claim", error)

    assert plain == 'Task |Claim| was executed with error.\nMessage: "too early"'
    assert markdown == 'Task |Claim| was executed with error.```Message: "too early"```'


def test_error_notification_for_other_errors():
    plain, markdown = error_notification("Claim", KeyError("balance"))
    assert plain == "An unhandled error occurs in |Claim|.\nMessage: 'balance'"
    assert markdown.endswith("```Message: 'balance'```")


@pytest.mark.asyncio
async def test_logging_notifier_levels(caplog):
    notifier = LoggingNotifier()
    logger = TaskLogger(notifier, group="demo", task="claim", identity="alice")

    with caplog.at_level(logging.INFO, logger="relaycron.tasks"):
        await logger.success("done")
        await logger.error("broken")

    levels = [record.levelno for record in caplog.records]
    assert levels == [logging.INFO, logging.ERROR]
    assert "[success] alice/demo/claim: done" in caplog.text


@pytest.mark.asyncio
async def test_task_logger_defaults_markdown_to_plain():
    sink = RecordingNotifier()
    await TaskLogger(sink, task="claim").info("hello")
    (notification,) = sink.notifications
    assert notification.markdown == "hello"
    assert notification.severity is Severity.INFO


@pytest.mark.asyncio
async def test_webhook_notifier_posts_json():
    sent = []

    class FakeClient:
        async def request(self, method, url, timeout=0, **kwargs):
            sent.append((method, url, kwargs["json"]))
            return httpx.Response(204, request=httpx.Request(method, url))

    notifier = WebhookNotifier("https://hooks.example.test/x", client=FakeClient())
    await notifier.notify(Notification(Severity.ERROR, "plain", "md", task="claim"))

    method, url, payload = sent[0]
    assert method == "POST"
    assert url == "https://hooks.example.test/x"
    assert payload["severity"] == "error"
    assert payload["task"] == "claim"


@pytest.mark.asyncio
async def test_webhook_failure_is_logged(caplog):
    class FailingClient:
        async def request(self, method, url, timeout=0, **kwargs):
            raise httpx.ConnectError("refused")

    notifier = WebhookNotifier("https://hooks.example.test/x", retries=1, client=FailingClient())
    await notifier.notify(Notification(Severity.INFO, "plain", "md"))
    assert "Webhook notification" in caplog.text


@pytest.mark.asyncio
async def test_multi_notifier_survives_broken_sink():
    class Broken(Notifier):
        async def notify(self, notification):
            raise RuntimeError("sink down")

    sink = RecordingNotifier()
    await MultiNotifier([Broken(), sink]).notify(Notification(Severity.INFO, "a", "a"))
    assert len(sink.notifications) == 1


def test_build_notifier():
    assert isinstance(build_notifier(), LoggingNotifier)
    multi = build_notifier("https://hooks.example.test/x")
    assert isinstance(multi, MultiNotifier)
    assert isinstance(multi.notifiers[1], WebhookNotifier)
