"""Example task group for a points-farming style web service.

Register it with ``RELAYCRON_GROUPS=examples.demo_group:group`` (run from the
repository root) and start it with ``relaycron run``.
"""

import httpx

from relaycron import (
    CallablePolicy,
    CronJitter,
    FixedRange,
    LoginSpec,
    TaskDefinition,
    TaskGroup,
    TaskResult,
    to_milliseconds,
)
from relaycron.http_utils import flood_protect

BASE_URL = "https://game.example.test/api"


async def login(create_client):
    async with httpx.AsyncClient(base_url=BASE_URL) as anonymous:
        response = await anonymous.post("/auth", json={"init_data": "demo"})
        response.raise_for_status()
        token = response.json()["access"]
    return create_client(base_url=BASE_URL, headers={"Authorization": f"Bearer {token}"})


async def get_balance(client):
    response = await client.get("/user/balance")
    response.raise_for_status()
    return response.json()


async def daily_reward(ctx):
    response = await ctx.client.post("/daily-reward")
    if response.status_code == 400:
        await ctx.logger.info("Daily reward already claimed")
        return None
    response.raise_for_status()
    await ctx.logger.success("Daily reward claimed")


async def farming(ctx):
    balance = await ctx.api["get_balance"]()
    farming = balance.get("farming")
    if farming is None:
        await ctx.client.post("/farming/start")
        await ctx.logger.info("Farming started")
        return TaskResult(extra_restart_timeout=to_milliseconds(hours=8))

    remaining = farming["end_time"] - balance["timestamp"]
    if remaining > 0:
        # wait for the current session and try again a bit after it ends
        return TaskResult(extra_restart_timeout=remaining + to_milliseconds(minutes=1))

    await ctx.client.post("/farming/claim")
    await flood_protect()
    await ctx.client.post("/farming/start")
    await ctx.logger.success(f"Farming claimed, balance {balance['available']}")


def tasks_policy(helpers):
    # a few tasks a day, spread over the morning
    return helpers.cron_delay_with_jitter("0 9 * * *", to_milliseconds(hours=3))


async def play_tasks(ctx):
    response = await ctx.client.get("/tasks")
    response.raise_for_status()
    for task in response.json():
        if task["status"] != "READY_FOR_CLAIM":
            continue
        await ctx.client.post(f"/tasks/{task['id']}/claim")
        await flood_protect()
    await ctx.logger.info(f"Referral code: {ctx.public['referral']}")


group = TaskGroup(
    name="demo",
    login=LoginSpec(login, lifetime=to_milliseconds(minutes=55)),
    api={"get_balance": get_balance},
    public={"referral": "ref-demo"},
    tasks=[
        TaskDefinition("DailyReward", daily_reward, CronJitter("0 6 * * *", to_milliseconds(hours=1))),
        TaskDefinition("Farming", farming, FixedRange(to_milliseconds(minutes=5), to_milliseconds(minutes=10))),
        TaskDefinition("Tasks", play_tasks, CallablePolicy(tasks_policy)),
    ],
)
