import asyncio

import pytest

from life_sim.core.scheduler import JobConflictError, PeriodicTaskManager


@pytest.mark.asyncio
# 测试：作业抛出异常时只记录失败次数，不向调用方抛出。
async def test_run_once_records_failure():
    manager = PeriodicTaskManager()

    def broken():
        raise ValueError("boom")

    assert await manager.run_once("rent", broken) is False
    status = manager.status()["rent"]
    assert status["runs"] == 1
    assert status["failures"] == 1
    assert status["last_error"] == "boom"


@pytest.mark.asyncio
async def test_periodic_job_keeps_running_after_errors():
    manager = PeriodicTaskManager()
    calls = []

    async def flaky():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first pass fails")

    manager.add("flaky", 0.01, flaky)
    with pytest.raises(JobConflictError):
        manager.add("flaky", 0.01, flaky)

    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    await manager.shutdown()

    assert len(calls) >= 3
    assert manager.status()["flaky"]["failures"] == 1
    assert manager.running is False


@pytest.mark.asyncio
# 测试：运行时启动周期任务后，关闭会停止全部任务并落盘。
async def test_runtime_timers_start_and_stop(runtime):
    await runtime.start(start_timers=True)

    assert runtime.scheduler.running
    assert {"snapshot", "agents", "rent", "salary"} <= set(runtime.scheduler.status())

    await runtime.shutdown()

    assert runtime.scheduler.running is False
    assert runtime.started is False
