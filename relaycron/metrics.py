"""Prometheus metrics for relaycron tasks."""

from prometheus_client import Counter, Gauge, Histogram, start_http_server
import functools
import time

# Public exports
__all__ = [
    "QUEUE_DEPTH",
    "TASK_LATENCY",
    "TASK_SUCCESS",
    "TASK_FAILURE",
    "TASK_SKIPPED",
    "start_metrics_server",
    "track_task",
]
# Histogram tracking how long each task body takes to run.
TASK_LATENCY = Histogram(
    "task_latency_seconds",
    "Time spent executing task bodies",
    ["task_name"],
)

TASK_SUCCESS = Counter(
    "task_success_total",
    "Total number of task cycles completed successfully",
    ["task_name"],
)

TASK_FAILURE = Counter(
    "task_failure_total",
    "Total number of task cycles that raised an exception",
    ["task_name"],
)

TASK_SKIPPED = Counter(
    "task_skipped_total",
    "Total number of task cycles skipped because a run was still queued",
    ["task_name"],
)

QUEUE_DEPTH = Gauge(
    "relaycron_queue_depth",
    "Invocations queued or running in the execution queue",
)


def start_metrics_server(port: int = 8000) -> None:
    """Start an HTTP server to expose Prometheus metrics."""
    start_http_server(port)


def track_task(func=None, *, name: str | None = None):
    """Decorator recording latency and outcome of an async task body.

    Can be used without parentheses as ``@track_task`` or with a custom task
    name as ``@track_task(name="blum/Farming/2")``.
    """

    def decorator(func):
        task_name = name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.monotonic()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                TASK_FAILURE.labels(task_name).inc()
                raise
            else:
                TASK_SUCCESS.labels(task_name).inc()
                return result
            finally:
                duration = time.monotonic() - start_time
                TASK_LATENCY.labels(task_name).observe(duration)

        return wrapper

    if func is None:
        return decorator

    return decorator(func)
