"""TransportConfig -- 服务端连接配置加载

从环境变量加载配置。
"""

import os

import structlog
from pydantic import BaseModel, Field, SecretStr

log = structlog.get_logger()

DEFAULT_SERVER_URL = "http://127.0.0.1:3333"
DEFAULT_TIMEOUT_S = 30


class TransportConfig(BaseModel):
    """Transport 配置 -- 从环境变量加载

    环境变量:
        SOL_SERVER_URL: 服务端基础 URL（默认 http://127.0.0.1:3333）
        SOL_SERVER_TIMEOUT_S: 请求超时（秒，默认 30）
        SOL_API_KEY: 服务端访问密钥（可选，作为 Bearer token 发送）
    """

    base_url: str = Field(
        default=DEFAULT_SERVER_URL,
        description="服务端基础 URL",
    )
    timeout_s: int = Field(
        default=DEFAULT_TIMEOUT_S,
        ge=1,
        description="请求超时（秒）",
    )
    api_key: SecretStr = Field(
        default=SecretStr(""),
        description="服务端访问密钥",
    )


def load_transport_config() -> TransportConfig:
    """从环境变量加载 Transport 配置

    Returns:
        TransportConfig 实例
    """
    kwargs: dict = {}

    if val := os.environ.get("SOL_SERVER_URL"):
        kwargs["base_url"] = val.strip()

    if val := os.environ.get("SOL_SERVER_TIMEOUT_S"):
        try:
            kwargs["timeout_s"] = int(val)
        except ValueError:
            log.warning(
                "invalid_timeout_config",
                env_var="SOL_SERVER_TIMEOUT_S",
                value=val,
                fallback=DEFAULT_TIMEOUT_S,
            )

    if val := os.environ.get("SOL_API_KEY"):
        kwargs["api_key"] = SecretStr(val)

    return TransportConfig(**kwargs)
