from datetime import datetime, timezone

import pytest

from relaycron.recurrence import (
    CallablePolicy,
    CronJitter,
    FixedRange,
    compute_delay,
    cron_delay,
    cron_delay_with_jitter,
    to_milliseconds,
)


NOW = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)


def test_to_milliseconds():
    assert to_milliseconds(hours=24) == 86_400_000
    assert to_milliseconds(minutes=1, seconds=30) == 90_000
    assert to_milliseconds(milliseconds=5) == 5


def test_fixed_range_stays_in_bounds():
    policy = FixedRange(1_000, 2_000)
    delays = {policy.compute(NOW) for _ in range(200)}
    assert min(delays) >= 1_000
    assert max(delays) <= 2_000
    assert len(delays) > 1


def test_fixed_range_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        FixedRange(5, 1)
    with pytest.raises(ValueError):
        FixedRange(-1, 1)


def test_cron_delay_next_calendar_slot():
    assert cron_delay("0 9 * * *", NOW) == to_milliseconds(minutes=30)
    # already past today's slot -> tomorrow
    assert cron_delay("0 8 * * *", NOW) == to_milliseconds(hours=23, minutes=30)


def test_cron_delay_on_exact_fire_time_moves_forward():
    at_nine = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
    assert cron_delay("0 9 * * *", at_nine) == to_milliseconds(hours=24)


def test_cron_delay_respects_timezone():
    # 09:00 in Paris is 07:00 UTC in October (CEST)
    assert cron_delay("0 9 * * *", NOW, "Europe/Paris") == to_milliseconds(
        hours=22, minutes=30
    )


def test_cron_jitter_adds_bounded_deviation():
    policy = CronJitter("0 9 * * *", jitter_ms=to_milliseconds(minutes=30))
    base = to_milliseconds(minutes=30)
    for _ in range(50):
        delay = policy.compute(NOW)
        assert base <= delay <= base + to_milliseconds(minutes=30)


def test_cron_delay_with_jitter_zero_jitter():
    assert cron_delay_with_jitter("0 9 * * *", 0, NOW) == to_milliseconds(minutes=30)


def test_cron_jitter_rejects_invalid_expression():
    with pytest.raises(ValueError):
        CronJitter("not a cron")
    with pytest.raises(ValueError):
        CronJitter("0 9 * * *", jitter_ms=-1)


def test_callable_policy_receives_helpers():
    seen = {}

    def policy_func(helpers):
        seen["now"] = helpers.now
        return helpers.cron_delay("0 9 * * *") + helpers.random_int(10, 10)

    delay = CallablePolicy(policy_func).compute(NOW)
    assert seen["now"] == NOW
    assert delay == to_milliseconds(minutes=30) + 10


def test_override_wins_over_policy():
    assert compute_delay(FixedRange(1_000, 1_000), now=NOW, override=5_000) == 5_000


def test_override_zero_is_honoured():
    assert compute_delay(FixedRange(1_000, 1_000), now=NOW, override=0) == 0


def test_negative_values_are_clamped():
    assert compute_delay(FixedRange(1, 1), now=NOW, override=-50) == 0
    assert compute_delay(CallablePolicy(lambda h: -10), now=NOW) == 0


def test_failing_policy_uses_fallback(caplog):
    def boom(helpers):
        raise RuntimeError("policy broke")

    delay = compute_delay(CallablePolicy(boom), now=NOW, fallback_ms=1234)
    assert delay == 1234
    assert "policy broke" in caplog.text


def test_non_numeric_policy_result_uses_fallback():
    assert compute_delay(CallablePolicy(lambda h: "soon"), now=NOW, fallback_ms=77) == 77
