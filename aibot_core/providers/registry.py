"""Provider 默认参数。

LlmConfig 只携带 provider、地址与凭据；各厂商请求中其余的固定参数
（默认 api-version、路径补全、安全设置等）集中在这里配置，便于升级。
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    default_path: str = ""
    default_api_version: str = ""
    default_model: str = ""
    extra: Dict[str, object] = field(default_factory=dict)


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    default_path="v1/chat/completions",
)

AZURE_OPENAI_CONFIG = ProviderConfig(
    name="azure-openai",
    default_api_version="2023-07-01-preview",
)

GEMINI_SAFETY_SETTINGS: List[Dict[str, str]] = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    default_path="v1beta/models",
    default_model="gemini-pro",
    extra={"top_p": 1, "top_k": 1, "safety_settings": GEMINI_SAFETY_SETTINGS},
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "azure-openai": AZURE_OPENAI_CONFIG,
    "gemini": GEMINI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = (name or "").lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
