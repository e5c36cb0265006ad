"""Serialized, de-duplicating execution queue.

Every task invocation of every group and identity goes through one
:class:`ExecutionQueue`. A single worker runs invocations one at a time in
submission order and pauses ``interval`` seconds after every iteration, so
external services never see parallel or bursty traffic.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Hashable, Optional, Set

from . import metrics

logger = logging.getLogger(__name__)

Invocation = Callable[[], Awaitable[Any]]


class DuplicateTaskError(RuntimeError):
    """Raised when a token is already queued or running."""


@dataclass
class _Entry:
    token: Hashable
    invocation: Invocation
    future: "asyncio.Future[Any]"


class ExecutionQueue:
    def __init__(self, interval: float = 1.0) -> None:
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.interval = interval
        self._entries: Deque[_Entry] = deque()
        self._tokens: Set[Hashable] = set()
        self._worker: Optional[asyncio.Task[None]] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def depth(self) -> int:
        """Number of queued or running invocations."""
        return len(self._tokens)

    def has(self, token: Hashable) -> bool:
        return token in self._tokens

    def submit(self, token: Hashable, invocation: Invocation) -> "asyncio.Future[Any]":
        """Append ``invocation`` and return a future for its result.

        The membership check and the insertion happen in one synchronous
        step; a token that is already present raises
        :class:`DuplicateTaskError` instead of being queued twice.
        """

        if token in self._tokens:
            raise DuplicateTaskError(f"{token!r} is already queued")
        self.start()
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._tokens.add(token)
        self._entries.append(_Entry(token, invocation, future))
        metrics.QUEUE_DEPTH.set(self.depth)
        logger.debug("Queued %s depth=%s", token, self.depth)
        return future

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop the worker and cancel every pending future."""

        worker, self._worker = self._worker, None
        if worker is not None:
            self._stopping = True
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
            finally:
                self._stopping = False
        while self._entries:
            entry = self._entries.popleft()
            entry.future.cancel()
        self._tokens.clear()
        metrics.QUEUE_DEPTH.set(0)

    async def _run(self) -> None:
        while True:
            if self._entries:
                await self._execute(self._entries.popleft())
            await asyncio.sleep(self.interval)

    async def _execute(self, entry: _Entry) -> None:
        try:
            result = await entry.invocation()
        except asyncio.CancelledError as exc:
            self._release(entry.token)
            if self._stopping:
                entry.future.cancel()
                raise
            # cancelled from inside the body, not by stop()
            if not entry.future.done():
                entry.future.set_exception(
                    RuntimeError(f"{entry.token!r} was cancelled while running")
                )
            logger.warning("Invocation %s cancelled itself: %r", entry.token, exc)
        except Exception as exc:
            self._release(entry.token)
            if not entry.future.done():
                entry.future.set_exception(exc)
        else:
            self._release(entry.token)
            if not entry.future.done():
                entry.future.set_result(result)

    def _release(self, token: Hashable) -> None:
        self._tokens.discard(token)
        metrics.QUEUE_DEPTH.set(self.depth)
