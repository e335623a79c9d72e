"""OutboxConfig -- outbox 引擎与驱动配置加载

从环境变量加载配置，非法数值记录告警后回退默认值。
"""

import os

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


class OutboxConfig(BaseModel):
    """Outbox 配置 -- 从环境变量加载

    环境变量:
        SOL_MAX_SEND_ATTEMPTS: 单条 transmission 最多 send 次数（默认 6）
        SOL_SENDING_STALE_S: sending 超过该秒数视为中断（默认 60）
        SOL_PENDING_FAST_INTERVAL_S: pending 初期的轮询间隔（秒，默认 2）
        SOL_PENDING_LINEAR_START_S: pending 超过该秒数后间隔线性增长（默认 10）
        SOL_PENDING_LINEAR_STEP_S: 线性阶段每次轮询增加的间隔（秒，默认 2）
        SOL_PENDING_SLOW_THRESHOLD_S: pending 超过该秒数后进入慢速轮询（默认 60）
        SOL_PENDING_SLOW_INTERVAL_S: 慢速轮询间隔，也是线性阶段的上限（秒，默认 20）
        SOL_POLL_LIMIT: 每轮最多轮询的 pending 数量（默认 5）
        SOL_TICK_S: OutboxService 定时驱动间隔（秒，默认 5）
        SOL_DEBUG_FAILURES: 是否识别 /fail 调试前缀（默认 true）
    """

    max_send_attempts: int = Field(default=6, ge=1, description="最多 send 次数")
    sending_stale_threshold_s: float = Field(
        default=60,
        gt=0,
        description="sending 状态超时阈值（秒）",
    )
    pending_fast_interval_s: float = Field(default=2, ge=0, description="快速轮询间隔（秒）")
    pending_linear_start_s: float = Field(default=10, ge=0, description="线性阶段起点（秒）")
    pending_linear_step_s: float = Field(default=2, ge=0, description="线性阶段步长（秒）")
    pending_slow_threshold_s: float = Field(default=60, ge=0, description="慢速阶段起点（秒）")
    pending_slow_interval_s: float = Field(default=20, ge=0, description="慢速轮询间隔（秒）")
    poll_limit: int = Field(default=5, ge=0, description="每轮最多轮询的 pending 数量")
    tick_s: float = Field(default=5, gt=0, description="定时驱动间隔（秒）")
    debug_failures_enabled: bool = Field(
        default=True,
        description="是否识别 /fail 调试前缀",
    )


def _read_number(env_var: str, cast: type, fallback: float) -> float | None:
    val = os.environ.get(env_var)
    if not val:
        return None
    try:
        return cast(val)
    except ValueError:
        log.warning(
            "invalid_outbox_config",
            env_var=env_var,
            value=val,
            fallback=fallback,
        )
        return None


def load_outbox_config() -> OutboxConfig:
    """从环境变量加载 Outbox 配置

    Returns:
        OutboxConfig 实例
    """
    defaults = OutboxConfig()
    kwargs: dict = {}

    for field, env_var, cast in (
        ("max_send_attempts", "SOL_MAX_SEND_ATTEMPTS", int),
        ("sending_stale_threshold_s", "SOL_SENDING_STALE_S", float),
        ("pending_fast_interval_s", "SOL_PENDING_FAST_INTERVAL_S", float),
        ("pending_linear_start_s", "SOL_PENDING_LINEAR_START_S", float),
        ("pending_linear_step_s", "SOL_PENDING_LINEAR_STEP_S", float),
        ("pending_slow_threshold_s", "SOL_PENDING_SLOW_THRESHOLD_S", float),
        ("pending_slow_interval_s", "SOL_PENDING_SLOW_INTERVAL_S", float),
        ("poll_limit", "SOL_POLL_LIMIT", int),
        ("tick_s", "SOL_TICK_S", float),
    ):
        value = _read_number(env_var, cast, getattr(defaults, field))
        if value is not None:
            kwargs[field] = value

    if val := os.environ.get("SOL_DEBUG_FAILURES"):
        lowered = val.strip().lower()
        if lowered in _TRUTHY:
            kwargs["debug_failures_enabled"] = True
        elif lowered in _FALSY:
            kwargs["debug_failures_enabled"] = False
        else:
            log.warning(
                "invalid_outbox_config",
                env_var="SOL_DEBUG_FAILURES",
                value=val,
                fallback=defaults.debug_failures_enabled,
            )

    return OutboxConfig(**kwargs)
