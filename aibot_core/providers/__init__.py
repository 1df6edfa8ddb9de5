"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护各厂商的固定参数 (registry)。
- 提供各厂商的具体实现 (openai_client、gemini_client)。
- 提供面向编排器的回调式传输层 (transport)。
"""

from aibot_core.config.settings import settings
from aibot_core.domain.exceptions import ValidationError
from aibot_core.domain.models import LlmConfig
from aibot_core.providers.base import ProviderClient
from aibot_core.providers.openai_client import OpenAIClient
from aibot_core.providers.gemini_client import GeminiClient
from aibot_core.providers.registry import GEMINI_CONFIG, get_provider_config


def create_provider(config: LlmConfig) -> ProviderClient:
    """根据 LlmConfig.provider 创建 Provider 实例。"""

    try:
        provider_cfg = get_provider_config(config.provider)
    except KeyError:
        raise ValidationError(
            code="UNSUPPORTED_PROVIDER",
            message=f'Unsupported provider "{config.provider}" selected.',
        ) from None
    if provider_cfg is GEMINI_CONFIG:
        return GeminiClient(settings)
    return OpenAIClient(settings)
