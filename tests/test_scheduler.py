import asyncio
import logging
from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from conftest import make_task, make_verify_task
from scheduler_bot.core import CronScheduler


@pytest.mark.asyncio
async def test_load_schedules_only_timed_tasks():
    scheduler = CronScheduler(AsyncMock())
    try:
        count = scheduler.load([make_task(name="a"), make_verify_task(123), make_task(name="b")])
        assert count == 2
        assert sorted(scheduler.job_names) == ["a", "b"]
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_reload_replaces_previous_jobs():
    scheduler = CronScheduler(AsyncMock())
    try:
        scheduler.load([make_task(name="a"), make_task(name="b")])
        scheduler.load([make_task(name="c")])
        assert scheduler.job_names == ["c"]
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_next_fire_time_is_tracked():
    scheduler = CronScheduler(AsyncMock())
    try:
        scheduler.load([make_task(name="a", cron="0 0 8 * * ?")])
        await asyncio.sleep(0)
        next_time = scheduler.next_fire_time("a")
        assert next_time is not None
        assert next_time > datetime.now()
        assert (next_time.hour, next_time.minute, next_time.second) == (8, 0, 0)
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_fire_calls_back_with_task_name():
    on_fire = AsyncMock()
    scheduler = CronScheduler(on_fire)

    await scheduler._fire("a")

    on_fire.assert_awaited_once_with("a")


@pytest.mark.asyncio
async def test_fire_errors_are_logged_not_raised(caplog):
    scheduler = CronScheduler(AsyncMock(side_effect=RuntimeError("boom")))

    with caplog.at_level(logging.ERROR, logger="scheduler-bot"):
        await scheduler._fire("a")

    assert "定时任务 a 执行失败" in caplog.text


@pytest.mark.asyncio
async def test_every_second_schedule_fires():
    fired = asyncio.Event()

    async def on_fire(name):
        fired.set()

    scheduler = CronScheduler(on_fire)
    try:
        scheduler.load([make_task(name="tick", cron="* * * * * ?")])
        await asyncio.wait_for(fired.wait(), 3)
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_clear_stops_jobs():
    scheduler = CronScheduler(AsyncMock())
    scheduler.load([make_task(name="a")])
    scheduler.clear()
    assert scheduler.job_names == []
    assert scheduler.next_fire_time("a") is None
    await scheduler.stop()
