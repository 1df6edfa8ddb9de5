"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置（优先级依次降低）。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from aibot_core.domain.models import LlmConfig


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AIBOT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 对话编排 ----
    default_language: str = Field(default="en", description="LLM 回答使用的语言")
    stream_mode: Literal["stream", "buffered"] = Field(
        default="stream",
        description="stream: 增量渲染；buffered: 占位消息直到完整响应后一次性替换",
    )
    watchdog_seconds: float = Field(
        default=30.0,
        gt=0,
        description="兜底看门狗：超过该时长仍无终态事件时强制复位流式状态",
    )

    # ---- 工作项上下文 ----
    devops_base_url: str = Field(default="https://dev.azure.com", description="工作项 REST 服务根地址")
    devops_organization: Optional[str] = Field(default=None, description="组织名")
    devops_project: Optional[str] = Field(default=None, description="项目名")
    devops_api_version: str = Field(default="7.1", description="REST api-version")
    workitem_api_timeout: float = Field(default=10.0, gt=0, description="工作项 REST 调用超时（秒）")
    workitem_retry_timeout: float = Field(default=8.0, gt=0, description="降级路径中简化 REST 重试的超时（秒）")
    workitem_batch_limit: int = Field(default=25, ge=1, le=200, description="批量获取工作项的上限")

    # ---- LLM Provider ----
    llm_provider: Optional[str] = Field(default=None, description="openai / azure-openai / gemini")
    llm_api_url: Optional[str] = Field(default=None, description="LLM API 地址")
    llm_api_token: Optional[str] = Field(default=None, description="LLM API 密钥")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="生成温度")
    llm_max_tokens: int = Field(default=4000, ge=1, description="单次回答最大 token 数")
    http_timeout: float = Field(default=60.0, ge=1.0, description="LLM HTTP 超时时间（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    log_max_data_length: int = Field(default=1000, ge=16, description="结构化日志字段的最大长度")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("llm_provider")
    @classmethod
    def validate_provider(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in {"openai", "azure-openai", "gemini"}:
            raise ValueError(f"Unsupported LLM provider: {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v!r}")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def llm_config(self) -> Optional[LlmConfig]:
        """根据 llm_* 字段构造 LlmConfig，缺少必填项时返回 None。"""

        if not (self.llm_provider and self.llm_api_url and self.llm_api_token):
            return None
        return LlmConfig(
            provider=self.llm_provider,
            api_url=self.llm_api_url,
            api_token=self.llm_api_token,
            temperature=self.llm_temperature,
            max_tokens=self.llm_max_tokens,
        )


settings = Settings()
