"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类（只读）
- get_config: 返回缓存的 Config 实例
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.check_*: 字段取值范围校验
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Tuple

from pydantic import field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from src.approver.csr.policy import MAX_ALLOWED_DNS_NAMES, MAX_EXPIRATION_LIMIT

KUBELET_SERVING_SIGNER = "kubernetes.io/kubelet-serving"


class Config(BaseSettings):
    # 校验策略
    provider_regex: str = ".*"
    provider_ip_prefixes: str = "0.0.0.0/0,::/0"
    max_expiration_sec: int = MAX_EXPIRATION_LIMIT
    allowed_dns_names: int = 1
    bypass_dns_resolution: bool = False
    bypass_hostname_check: bool = False
    ignore_non_system_node: bool = False

    # 控制器
    signer_name: str = KUBELET_SERVING_SIGNER
    kubeconfig: str | None = None
    dns_timeout_seconds: float = 1.0
    workers: int = 2
    retry_attempts: int = 5
    retry_initial_delay: float = 0.05
    retry_max_delay: float = 2.0
    requeue_delay_seconds: float = 5.0
    shutdown_grace_seconds: float = 10.0

    # 进程
    log_level: str = "INFO"
    probe_host: str = "0.0.0.0"
    probe_port: int = 8081

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    @field_validator("max_expiration_sec")
    @classmethod
    def check_max_expiration(cls, value: int) -> int:
        if value < 0 or value > MAX_EXPIRATION_LIMIT:
            raise ValueError("最大有效期不能小于 0 秒，也不能超过 367 天")
        return value

    @field_validator("allowed_dns_names")
    @classmethod
    def check_allowed_dns_names(cls, value: int) -> int:
        if value < 1 or value > MAX_ALLOWED_DNS_NAMES:
            raise ValueError("允许的 DNS 名称数量必须在 1 到 1000 之间")
        return value

    @field_validator("workers", "retry_attempts")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("取值必须至少为 1")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: Any) -> Any:
        """日志级别统一转为大写，兼容 `debug` 这类写法。"""
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""
        cfg_path = os.environ.get("CONFIG_FILE")
        json_file = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls, json_file=json_file),
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_config() -> Config:
    """进程内只构造一次配置；非法配置在此处直接抛出 ValidationError。"""
    return Config()
