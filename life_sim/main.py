"""
Life Sim 游戏服务器的入口模块（FastAPI）。

此模块负责应用级别的生命周期管理（lifespan）与路由挂载：

- 启动时读取配置并创建 :class:`GameRuntime`，加载持久化状态、补齐服务器代理，
    然后（非测试环境下）启动快照广播、代理行为、收租与发薪等周期任务。
- 运行时实例挂在 ``app.state.runtime`` 上，HTTP 路由与 WebSocket 处理器
    通过依赖注入取用。
- 关闭时停止周期任务并对主文档与账本做最后一次落盘。

重要环境变量（常用）：
- LIFE_SIM_SESSION_SECRET：Session 中间件的 secret（用于 Cookie 签名）。
- LIFE_SIM_SKIP_TIMERS：设置后不启动周期任务（pytest 下自动跳过）。
- LIFE_SIM_STORAGE / LIFE_SIM_REDIS_URL：持久化后端，见 ``utils/settings.py``。
- LIFE_SIM_LOG_LEVEL：``life_sim`` 日志器的级别，默认 INFO。
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from .api.auth_endpoints import router as auth_router
from .api.endpoints import router as game_router
from .api.payments import router as payments_router
from .core.runtime import GameRuntime, timers_enabled
from .realtime.endpoint import router as realtime_router
from .utils.settings import get_game_config

logging.getLogger("life_sim").setLevel(os.getenv("LIFE_SIM_LOG_LEVEL", "INFO").upper())

logger = logging.getLogger(__name__)

session_secret = os.getenv("LIFE_SIM_SESSION_SECRET", "life-sim-session-key")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时装配并加载运行时，关闭时停止任务并落盘。"""

    runtime = GameRuntime(get_game_config())
    await runtime.start(start_timers=timers_enabled())
    app.state.runtime = runtime
    logger.info("--- Game runtime ready ---")

    yield

    await runtime.shutdown()
    logger.info("--- Game runtime stopped ---")


app = FastAPI(title="Life Sim", version="0.1.0", lifespan=lifespan)
app.add_middleware(SessionMiddleware, secret_key=session_secret)

app.include_router(auth_router)
app.include_router(game_router)
app.include_router(payments_router)
app.include_router(realtime_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict:
    """提供健康检查端点，供运行时监控使用。"""
    return {"status": "ok"}
