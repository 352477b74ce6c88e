"""周期任务调度器：快照广播、代理 tick、租金、工资与探索网格重置。

每个任务是一条独立的 asyncio Task，循环执行 ``await sleep(interval)`` 后调用作业。
作业中的异常只记录日志，下一个周期照常重试；单个作业的执行不会被中途取消，
``shutdown`` 仅在任务处于等待阶段或作业完成后生效。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

JobCallable = Callable[[], Union[None, Awaitable[Any]]]


class JobConflictError(RuntimeError):
    """当同名周期任务已在运行时抛出的异常。"""

    def __init__(self, name: str) -> None:
        super().__init__(f"periodic job '{name}' is already running")
        self.name = name


@dataclass
class PeriodicJob:
    """周期任务的状态记录。"""

    name: str
    interval: float
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    last_run_at: Optional[float] = None
    started_at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at,
        }
        if self.last_error is not None:
            payload["last_error"] = self.last_error
        return payload


class PeriodicTaskManager:
    """基于 asyncio 的周期任务管理器。"""

    def __init__(self) -> None:
        self._jobs: Dict[str, PeriodicJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def add(self, name: str, interval: float, func: JobCallable) -> PeriodicJob:
        """注册并立即启动一个周期任务（需在事件循环中调用）。"""

        task = self._tasks.get(name)
        if task is not None and not task.done():
            raise JobConflictError(name)
        job = PeriodicJob(name=name, interval=float(interval))
        self._jobs[name] = job
        self._tasks[name] = asyncio.create_task(self._loop(job, func), name=f"periodic:{name}")
        logger.info("Started periodic job %s every %.2fs", name, job.interval)
        return job

    async def run_once(self, name: str, func: JobCallable) -> bool:
        """执行一次作业并记账；失败时返回 False 而不是抛出。"""

        job = self._jobs.setdefault(name, PeriodicJob(name=name, interval=0.0))
        try:
            result = func()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            job.failures += 1
            job.last_error = str(exc)
            logger.exception("Periodic job %s failed; retrying next interval", name)
            return False
        finally:
            job.runs += 1
            job.last_run_at = time.time()
        return True

    async def _loop(self, job: PeriodicJob, func: JobCallable) -> None:
        while True:
            await asyncio.sleep(job.interval)
            # shield so a shutdown never interrupts a pass mid-way
            await asyncio.shield(self.run_once(job.name, func))

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {name: job.as_dict() for name, job in self._jobs.items()}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    async def shutdown(self, *, timeout: float = 5.0) -> None:
        """取消全部周期任务并等待其退出。"""

        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        self._tasks.clear()
        logger.info("Periodic jobs stopped")


__all__ = ["JobConflictError", "PeriodicJob", "PeriodicTaskManager"]
