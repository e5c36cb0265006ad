"""Recurrence policies computing the delay until a task's next attempt.

Three flavours exist:

``FixedRange``
    Uniformly random delay between two bounds, so runs never look perfectly
    periodic.
``CronJitter``
    Next calendar-aligned fire time of a crontab expression plus a random
    deviation.
``CallablePolicy``
    Arbitrary function receiving :class:`PolicyHelpers`.

A task body may additionally return an override delay; :func:`compute_delay`
lets it win for the immediately following decision only.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from .models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_MS = 60_000

_rng = random.SystemRandom()


def to_milliseconds(
    *,
    days: float = 0,
    hours: float = 0,
    minutes: float = 0,
    seconds: float = 0,
    milliseconds: float = 0,
) -> int:
    """Return the total duration in whole milliseconds."""

    total = ((days * 24 + hours) * 60 + minutes) * 60 + seconds
    return int(total * 1000 + milliseconds)


def random_int(low: int, high: int) -> int:
    """Uniform integer in ``[low, high]``."""

    if low > high:
        low, high = high, low
    return _rng.randint(int(low), int(high))


def _build_trigger(expression: str, timezone: str | ZoneInfo) -> CronTrigger:
    tz = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
    return CronTrigger.from_crontab(expression, timezone=tz)


def _delay_until_next_fire(trigger: CronTrigger, now: datetime) -> int:
    fire_time = trigger.get_next_fire_time(None, now)
    if fire_time is not None and fire_time <= now:
        # already firing this second
        fire_time = trigger.get_next_fire_time(None, now + timedelta(seconds=1))
    if fire_time is None:
        raise ValueError("cron expression has no future fire time")
    delta = fire_time - now
    return max(0, int(delta.total_seconds() * 1000))


def cron_delay(
    expression: str,
    now: Optional[datetime] = None,
    timezone: str | ZoneInfo = "UTC",
) -> int:
    """Milliseconds from ``now`` until the next fire time of ``expression``."""

    now = now or utcnow()
    return _delay_until_next_fire(_build_trigger(expression, timezone), now)


def cron_delay_with_jitter(
    expression: str,
    jitter_ms: int,
    now: Optional[datetime] = None,
    timezone: str | ZoneInfo = "UTC",
) -> int:
    """Like :func:`cron_delay` plus a uniform deviation of up to ``jitter_ms``."""

    return cron_delay(expression, now, timezone) + random_int(0, max(0, jitter_ms))


class RecurrencePolicy:
    """Base class for recurrence policies."""

    def compute(self, now: datetime) -> int:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(frozen=True)
class FixedRange(RecurrencePolicy):
    min_ms: int
    max_ms: int

    def __post_init__(self) -> None:
        if self.min_ms < 0 or self.max_ms < 0:
            raise ValueError("FixedRange bounds must not be negative")
        if self.min_ms > self.max_ms:
            raise ValueError("FixedRange min_ms must not exceed max_ms")

    def compute(self, now: datetime) -> int:
        return random_int(self.min_ms, self.max_ms)


@dataclass(frozen=True)
class CronJitter(RecurrencePolicy):
    expression: str
    jitter_ms: int = 0
    timezone: str = "UTC"
    _trigger: CronTrigger = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.jitter_ms < 0:
            raise ValueError("jitter_ms must not be negative")
        try:
            trigger = _build_trigger(self.expression, self.timezone)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression {self.expression!r}: {exc}") from exc
        object.__setattr__(self, "_trigger", trigger)

    def compute(self, now: datetime) -> int:
        return _delay_until_next_fire(self._trigger, now) + random_int(0, self.jitter_ms)


@dataclass(frozen=True)
class PolicyHelpers:
    """Helpers handed to :class:`CallablePolicy` functions."""

    now: datetime
    timezone: str = "UTC"

    def random_int(self, low: int, high: int) -> int:
        return random_int(low, high)

    def cron_delay(self, expression: str) -> int:
        return cron_delay(expression, self.now, self.timezone)

    def cron_delay_with_jitter(self, expression: str, jitter_ms: int) -> int:
        return cron_delay_with_jitter(expression, jitter_ms, self.now, self.timezone)


@dataclass(frozen=True)
class CallablePolicy(RecurrencePolicy):
    func: Callable[[PolicyHelpers], int]
    timezone: str = "UTC"

    def compute(self, now: datetime) -> int:
        return self.func(PolicyHelpers(now=now, timezone=self.timezone))


def compute_delay(
    policy: RecurrencePolicy,
    *,
    now: Optional[datetime] = None,
    override: Optional[int] = None,
    fallback_ms: int = DEFAULT_FALLBACK_MS,
) -> int:
    """Return the delay in milliseconds before the next attempt.

    ``override`` (from the previous invocation's result) wins over the
    policy. If the policy raises or returns something that is not a number,
    ``fallback_ms`` is used so the task never stalls. The result is never
    negative.
    """

    if override is not None:
        return max(0, int(override))

    now = now or utcnow()
    try:
        delay = policy.compute(now)
        if isinstance(delay, bool) or not isinstance(delay, (int, float)):
            raise TypeError(f"policy returned {type(delay).__name__}, expected int")
    except Exception:
        logger.exception("Recurrence policy %r failed; using fallback %sms", policy, fallback_ms)
        delay = fallback_ms
    return max(0, int(delay))


__all__ = [
    "CallablePolicy",
    "CronJitter",
    "FixedRange",
    "PolicyHelpers",
    "RecurrencePolicy",
    "compute_delay",
    "cron_delay",
    "cron_delay_with_jitter",
    "random_int",
    "to_milliseconds",
]
