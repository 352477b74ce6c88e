"""Pytest configuration helpers for the life sim server.

Conventions and fixtures
- `runtime` : a fresh in-memory :class:`GameRuntime` (timers off, no agents).
- `clock` : a manually advanced clock for throttle/agent timing tests.
- `client` : a TestClient whose lifespan builds the app runtime; use it as the
    entry point for HTTP and WebSocket tests.
- `patch` : general-purpose alias for pytest's `monkeypatch` fixture.

Environment variables are pinned before the app is imported so the lifespan
uses the in-memory backend and never spawns periodic jobs or agents.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


def _ensure_project_root_on_path() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_path()

os.environ["LIFE_SIM_STORAGE"] = "memory"
os.environ["LIFE_SIM_SKIP_TIMERS"] = "1"
os.environ["LIFE_SIM_AGENT_COUNT"] = "0"
os.environ["LIFE_SIM_PAYMENT_SECRET"] = "test-pay-secret"

import pytest
from fastapi.testclient import TestClient

from life_sim.main import app
from life_sim.utils.settings import get_game_config

from tests.utils import FakeClock, make_runtime


@pytest.fixture(autouse=True)
def fresh_config():
    """每个测试都重新读取配置，避免环境变量改动在测试间泄漏。"""

    get_game_config.cache_clear()
    yield
    get_game_config.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime(clock):
    """提供未启动周期任务的内存运行时。

    说明：构造函数不做任何 I/O，需要加载存档的测试自行 ``await runtime.start(start_timers=False)``。
    """

    return make_runtime(clock=clock)


@pytest.fixture
def client():
    """提供运行了 lifespan 的 TestClient，``app.state.runtime`` 在 with 块内可用。"""

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def patch(monkeypatch):
    """通用的 `monkeypatch` 别名。"""

    return monkeypatch
