"""Per-task schedulers and the service owning them.

Each :class:`TaskScheduler` owns the timer of one ``(identity, task)`` pair.
When it fires, the scheduler acquires a session, submits the task body to
the shared :class:`~relaycron.queue.ExecutionQueue`, interprets the outcome,
persists the next due date and re-arms itself. Nothing raised inside a
cycle stops the recurring schedule.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from .. import metrics
from ..models import TaskKey, TaskOutcome, TaskResult, TaskRuntimeRecord, utcnow
from ..notify import LoggingNotifier, Notifier, TaskLogger, build_notifier, error_notification
from ..plugins import TaskContext, TaskDefinition, TaskGroup
from ..queue import DuplicateTaskError, ExecutionQueue
from ..recurrence import DEFAULT_FALLBACK_MS, compute_delay
from ..session import ClientFactory, SessionManager
from ..state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    WAITING = "waiting"
    RUNNING = "running"
    RESCHEDULING = "rescheduling"
    STOPPED = "stopped"


def interpret_result(result: Any) -> TaskOutcome:
    """Map a task body's return value onto a successful :class:`TaskOutcome`."""

    if result is None:
        return TaskOutcome.success()
    if isinstance(result, TaskResult):
        return TaskOutcome.success(result.extra_restart_timeout)
    logger.warning("Ignoring unexpected task result %r", result)
    return TaskOutcome.success()


class TaskScheduler:
    """Recurring timer of one task for one identity."""

    def __init__(
        self,
        group: TaskGroup,
        key: TaskKey,
        task: TaskDefinition,
        identity: str,
        *,
        queue: ExecutionQueue,
        sessions: SessionManager,
        store: StateStore,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
        fallback_delay_ms: int = DEFAULT_FALLBACK_MS,
    ) -> None:
        self.group = group
        self.key = key
        self.task = task
        self.identity = identity
        self._queue = queue
        self._sessions = sessions
        self._store = store
        self._clock = clock
        self._fallback_delay_ms = fallback_delay_ms
        self._logger = TaskLogger(
            notifier, group=group.name, task=task.name, identity=identity
        )
        self.state = SchedulerState.STOPPED
        self.next_execution_date: Optional[datetime] = None
        self.last_outcome: Optional[TaskOutcome] = None
        self.cycles = 0
        self._stopped = True
        self._timer: Optional[asyncio.TimerHandle] = None
        self._cycle_task: Optional[asyncio.Task[TaskOutcome]] = None

    @property
    def token(self) -> Tuple[str, TaskKey]:
        """De-duplication token used in the execution queue."""
        return (self.identity, self.key)

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        """Resume from the persisted due date, or run at once if it passed."""

        self._stopped = False
        now = self._clock()
        try:
            record = self._store.get_task_record(self.identity, self.key)
        except StateStoreError:
            logger.exception(
                "Cannot read due date of %s for %s; running now", self.key, self.identity
            )
            record = None

        if record is None or record.next_execution_date <= now:
            self.next_execution_date = now
            self._launch()
            return

        self.next_execution_date = record.next_execution_date
        remaining = record.next_execution_date - now
        self._arm(int(remaining.total_seconds() * 1000))

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_timer()
        self.state = SchedulerState.STOPPED
        task, self._cycle_task = self._cycle_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_now(self) -> Optional[TaskOutcome]:
        """Run a cycle immediately unless one is already in progress."""

        if self.state in (SchedulerState.RUNNING, SchedulerState.RESCHEDULING):
            logger.debug("%s for %s is already running", self.key, self.identity)
            return None
        self._cancel_timer()
        return await self.run_cycle()

    def _launch(self) -> None:
        self._timer = None
        self.state = SchedulerState.RUNNING
        self._cycle_task = asyncio.get_running_loop().create_task(self.run_cycle())

    def _arm(self, delay_ms: int) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0, delay_ms) / 1000, self._launch)
        self.state = SchedulerState.WAITING
        logger.debug("%s for %s armed in %sms", self.key, self.identity, delay_ms)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ------------------------------------------------------------------
    # Cycle

    async def run_cycle(self) -> TaskOutcome:
        self.state = SchedulerState.RUNNING
        self.cycles += 1
        outcome = await self._attempt()
        self.last_outcome = outcome

        self.state = SchedulerState.RESCHEDULING
        now = self._clock()
        delay = compute_delay(
            self.task.recurrence,
            now=now,
            override=outcome.override_delay,
            fallback_ms=self._fallback_delay_ms,
        )
        next_date = now + timedelta(milliseconds=delay)
        self.next_execution_date = next_date
        try:
            self._store.set_task_record(
                self.identity, self.key, TaskRuntimeRecord(next_execution_date=next_date)
            )
        except StateStoreError as exc:
            logger.exception("Cannot persist due date of %s for %s", self.key, self.identity)
            await self._logger.error(
                f"Next run of |{self.task.name}| could not be saved and will be lost "
                f"on restart.\nMessage: {exc}",
                f"Next run of |{self.task.name}| could not be saved and will be lost "
                f"on restart.```Message: {exc}```",
            )

        if self._stopped:
            self.state = SchedulerState.STOPPED
        else:
            self._arm(delay)
        return outcome

    async def _skip(self) -> TaskOutcome:
        metrics.TASK_SKIPPED.labels(str(self.key)).inc()
        await self._logger.info(
            f"Task |{self.task.name}| is still queued or running. Skipping this cycle"
        )
        return TaskOutcome.skipped()

    async def _attempt(self) -> TaskOutcome:
        if self._queue.has(self.token):
            return await self._skip()

        submitted = False
        try:
            client = await self._sessions.acquire(
                self.identity, self.group.login.callback, self.group.login.lifetime
            )
            context = TaskContext(
                key=self.key,
                identity=self.identity,
                client=client,
                api=self.group.bind_api(client),
                logger=self._logger,
                public=self.group.public,
            )

            @metrics.track_task(name=str(self.key))
            async def invoke() -> Any:
                await self._logger.info(f"Task |{self.task.name}| started")
                return await self.task.body(context)

            try:
                future = self._queue.submit(self.token, invoke)
            except DuplicateTaskError:
                return await self._skip()
            submitted = True
            result = await future
        except asyncio.CancelledError:
            if self._stopped:
                raise
            return await self._fail(
                RuntimeError(f"Task |{self.task.name}| was cancelled"), submitted
            )
        except Exception as exc:
            return await self._fail(exc, submitted)

        outcome = interpret_result(result)
        await self._logger.success(f"Task |{self.task.name}| finished")
        return outcome

    async def _fail(self, exc: BaseException, submitted: bool) -> TaskOutcome:
        if not submitted:
            metrics.TASK_FAILURE.labels(str(self.key)).inc()
        if (
            isinstance(exc, httpx.HTTPStatusError)
            and exc.response.status_code == httpx.codes.UNAUTHORIZED
        ):
            try:
                self._sessions.invalidate(self.identity)
            except StateStoreError:
                logger.exception("Cannot invalidate session of %s", self.identity)
        plain, markdown = error_notification(self.task.name, exc)
        await self._logger.error(plain, markdown)
        return TaskOutcome.failed(exc)

    def describe(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "task": str(self.key),
            "state": self.state.value,
            "next_execution_date": (
                self.next_execution_date.isoformat() if self.next_execution_date else None
            ),
            "cycles": self.cycles,
            "last_outcome": self.last_outcome.status.value if self.last_outcome else None,
        }


class SchedulerService:
    """Own the queue, stores, sessions and every :class:`TaskScheduler`.

    Parameters
    ----------
    groups:
        Task groups to schedule.
    identities:
        Identities every task of every group runs for.
    state_dir:
        Directory receiving one state file per group.
    """

    def __init__(
        self,
        groups: Iterable[TaskGroup],
        identities: Sequence[str] = ("default",),
        *,
        state_dir: str | Path,
        queue_interval: float = 1.0,
        fallback_delay_ms: int = DEFAULT_FALLBACK_MS,
        touch_sessions: bool = False,
        notifier: Optional[Notifier] = None,
        client_factory: ClientFactory = httpx.AsyncClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.groups: List[TaskGroup] = list(groups)
        names = [group.name for group in self.groups]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate task group names: {names}")
        if not identities:
            raise ValueError("At least one identity is required")
        self.identities = [str(identity) for identity in identities]
        self.queue = ExecutionQueue(queue_interval)
        self.notifier = notifier or LoggingNotifier()
        self.stores: Dict[str, StateStore] = {}
        self.sessions: Dict[str, SessionManager] = {}
        for group in self.groups:
            store = StateStore.for_group(group.name, state_dir)
            self.stores[group.name] = store
            self.sessions[group.name] = SessionManager(
                store,
                client_factory=client_factory,
                clock=clock,
                touch_on_restore=touch_sessions,
            )

        self.schedulers: List[TaskScheduler] = []
        for identity in self.identities:
            for group in self.groups:
                for key, task in group.keyed_tasks():
                    self.schedulers.append(
                        TaskScheduler(
                            group,
                            key,
                            task,
                            identity,
                            queue=self.queue,
                            sessions=self.sessions[group.name],
                            store=self.stores[group.name],
                            notifier=self.notifier,
                            clock=clock,
                            fallback_delay_ms=fallback_delay_ms,
                        )
                    )
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self.queue.start()
        for scheduler in self.schedulers:
            scheduler.start()
        self._running = True
        logger.info(
            "Scheduler service started groups=%s identities=%s tasks=%s",
            len(self.groups),
            len(self.identities),
            len(self.schedulers),
        )

    async def stop(self) -> None:
        for scheduler in self.schedulers:
            await scheduler.stop()
        await self.queue.stop()
        for sessions in self.sessions.values():
            await sessions.aclose()
        self._running = False
        logger.info("Scheduler service stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    def find(self, task: str, identity: Optional[str] = None) -> TaskScheduler:
        """Return the scheduler for ``task`` (``group/name`` or full key)."""

        identity = identity or self.identities[0]
        for scheduler in self.schedulers:
            if scheduler.identity != identity:
                continue
            full = str(scheduler.key)
            short = f"{scheduler.key.group}/{scheduler.key.name}"
            if task in (full, short):
                return scheduler
        raise ValueError(f"Unknown task: {task}")

    async def trigger(self, task: str, identity: Optional[str] = None) -> Optional[TaskOutcome]:
        return await self.find(task, identity).run_now()

    def status(self) -> List[Dict[str, Any]]:
        return [scheduler.describe() for scheduler in self.schedulers]


# ---------------------------------------------------------------------------
# Default service accessor

_default_service: SchedulerService | None = None


def set_default_service(service: SchedulerService) -> None:
    """Set the global default service instance."""

    global _default_service
    _default_service = service


def get_default_service() -> SchedulerService:
    """Return the configured default service."""

    if _default_service is None:
        raise RuntimeError("Default service has not been initialised")
    return _default_service


def create_service(
    cfg: Dict[str, Any] | None = None,
    groups: Iterable[TaskGroup] | None = None,
    **kwargs: Any,
) -> SchedulerService:
    """Build a :class:`SchedulerService` from configuration."""

    from ..config import load_config
    from .. import plugins

    cfg = cfg if cfg is not None else load_config()
    if groups is None:
        groups = plugins.initialize(cfg.get("groups", []))
    kwargs.setdefault("notifier", build_notifier(cfg.get("notify_webhook_url")))
    return SchedulerService(
        groups,
        cfg.get("identities") or ["default"],
        state_dir=cfg["state_dir"],
        queue_interval=float(cfg.get("queue_interval", 1.0)),
        fallback_delay_ms=int(cfg.get("fallback_delay_ms", DEFAULT_FALLBACK_MS)),
        touch_sessions=bool(cfg.get("touch_sessions", False)),
        **kwargs,
    )


__all__ = [
    "SchedulerService",
    "SchedulerState",
    "TaskScheduler",
    "create_service",
    "get_default_service",
    "interpret_result",
    "set_default_service",
]
