"""提供游戏服务器所需的配置模型与读取工具。

所有时间类字段均以「秒」为单位（与浏览器端的毫秒区分开）；金额类字段均为
整数游戏币。配置默认从仓库根目录下的 ``config/game_settings.yaml`` 读取，
部分运行时开关可通过 ``LIFE_SIM_*`` 环境变量覆盖（见 :func:`apply_env_overrides`）。
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class WorldParameters(BaseModel):
    """世界尺寸与探索网格参数。"""

    width: float = Field(default=2200.0, gt=0)
    height: float = Field(default=1400.0, gt=0)
    explore_sectors_x: int = Field(default=12, ge=1)
    explore_sectors_y: int = Field(default=9, ge=1)
    # 周期性重置探索网格，让代理持续巡游
    explore_reset_seconds: float = Field(default=900.0, gt=0)


class EconomyConfig(BaseModel):
    """租金、工资、默认余额等经济参数。"""

    default_money: int = Field(default=400, ge=0)
    rent_amount: int = Field(default=50, ge=0)
    rent_interval_seconds: float = Field(default=600.0, gt=0)
    salary_amount: int = Field(default=25, ge=0)
    salary_interval_seconds: float = Field(default=120.0, gt=0)
    house_buy_cost: int = Field(default=3000, ge=0)
    default_shop_price: int = Field(default=2, ge=0)


class AgentConfig(BaseModel):
    """服务器控制代理的行为参数。"""

    count: int = Field(default=0, ge=0)
    tick_seconds: float = Field(default=0.12, gt=0)
    min_speed: float = Field(default=100.0, gt=0)
    max_speed: float = Field(default=200.0, gt=0)
    arrival_threshold: float = Field(default=20.0, gt=0)
    explore_retarget_radius: float = Field(default=50.0, gt=0)
    explore_retarget_probability: float = Field(default=0.01, ge=0.0, le=1.0)
    work_seconds: float = Field(default=6.0, ge=0)
    work_deposit: int = Field(default=20, ge=0)
    rest_seconds: float = Field(default=45.0, ge=0)
    shop_visit_probability: float = Field(default=0.01, ge=0.0, le=1.0)
    purchase_cooldown_seconds: float = Field(default=300.0, ge=0)
    velocity_smoothing: float = Field(default=0.85, ge=0.0, lt=1.0)
    idle_player_timeout_seconds: float = Field(default=3.0, ge=0)
    idle_player_retarget_probability: float = Field(default=0.02, ge=0.0, le=1.0)
    seed: Optional[int] = Field(default=None)


class RealtimeConfig(BaseModel):
    """实时广播与客户端事件限流参数。"""

    snapshot_interval_seconds: float = Field(default=0.15, gt=0)
    update_min_interval_seconds: float = Field(default=0.08, ge=0)
    chat_max_length: int = Field(default=300, ge=1)
    # 近似匹配容差：恢复客户端上报的建筑时使用
    restore_position_tolerance: float = Field(default=16.0, ge=0)
    restore_size_tolerance: float = Field(default=12.0, ge=0)


class PersistenceConfig(BaseModel):
    """持久化后端与写入合并策略。"""

    backend: Literal["memory", "file", "redis"] = "file"
    data_dir: str = Field(default="data")
    redis_url: Optional[str] = None
    redis_prefix: str = Field(default="life_sim")
    production: bool = False
    brain_debounce_seconds: float = Field(default=0.25, ge=0)
    ledger_debounce_seconds: float = Field(default=0.2, ge=0)
    ledger_max_movements: int = Field(default=20000, ge=1)
    activity_log_limit: int = Field(default=5000, ge=1)


class PaymentConfig(BaseModel):
    """外部支付回调的校验与入账参数。"""

    secret: str = Field(default="dev-pay-secret")
    base_link: str = Field(default="https://pay.example.com/checkout")
    credit_amount: int = Field(default=500, gt=0)
    min_amount_usd: float = Field(default=5.0, ge=0)


class GameConfig(BaseModel):
    """完整的游戏服务器配置对象。"""

    world: WorldParameters = Field(default_factory=WorldParameters)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    agents: AgentConfig = Field(default_factory=AgentConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    payments: PaymentConfig = Field(default_factory=PaymentConfig)


def _load_yaml_config(path: Path) -> dict:
    """读取并解析给定路径的 YAML 配置文件，文件缺失时返回空字典。"""
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def apply_env_overrides(config: GameConfig) -> GameConfig:
    """根据 ``LIFE_SIM_*`` 环境变量覆盖持久化与支付相关配置。"""

    persistence = config.persistence
    backend = os.getenv("LIFE_SIM_STORAGE")
    if backend:
        persistence.backend = backend.strip().lower()  # type: ignore[assignment]
    data_dir = os.getenv("LIFE_SIM_DATA_DIR")
    if data_dir:
        persistence.data_dir = data_dir
    redis_url = os.getenv("LIFE_SIM_REDIS_URL")
    if redis_url:
        persistence.redis_url = redis_url
        if not backend:
            persistence.backend = "redis"
    if os.getenv("LIFE_SIM_ENV", "").lower() == "production":
        persistence.production = True

    secret = os.getenv("LIFE_SIM_PAYMENT_SECRET")
    if secret:
        config.payments.secret = secret

    agent_count = os.getenv("LIFE_SIM_AGENT_COUNT")
    if agent_count:
        config.agents.count = max(0, int(agent_count))
    return config


def load_game_config(config_path: Optional[Path] = None) -> GameConfig:
    """从 YAML 文件加载游戏配置。

    Parameters
    ----------
    config_path:
        可选的 YAML 配置文件路径。若未指定，则默认读取仓库根目录下
        ``config/game_settings.yaml``。
    """

    if config_path is None:
        config_path = (
            Path(__file__).resolve().parents[2] / "config" / "game_settings.yaml"
        )

    raw = _load_yaml_config(config_path)
    return apply_env_overrides(GameConfig.model_validate(raw))


@lru_cache(maxsize=1)
def get_game_config(config_path: Optional[Path] = None) -> GameConfig:
    """返回解析后的 :class:`GameConfig`，并使用 LRU 缓存避免重复读取。"""

    return load_game_config(config_path=config_path)
