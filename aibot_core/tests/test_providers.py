import pytest

from aibot_core.domain.exceptions import ValidationError
from aibot_core.domain.models import LlmConfig
from aibot_core.providers import create_provider
from aibot_core.providers.gemini_client import GeminiClient
from aibot_core.providers.openai_client import OpenAIClient
from aibot_core.providers.registry import get_provider_config


def _config(provider):
    return LlmConfig(provider=provider, api_url="https://x", api_token="t")


@pytest.mark.parametrize(
    "provider, expected",
    [("openai", OpenAIClient), ("azure-openai", OpenAIClient), ("Gemini", GeminiClient)],
)
def test_create_provider(provider, expected):
    assert isinstance(create_provider(_config(provider)), expected)


def test_create_provider_unknown():
    with pytest.raises(ValidationError) as exc_info:
        create_provider(_config("mystery"))
    assert exc_info.value.code == "UNSUPPORTED_PROVIDER"


def test_registry_defaults():
    assert get_provider_config("openai").default_path == "v1/chat/completions"
    assert get_provider_config("azure-openai").default_api_version == "2023-07-01-preview"
    assert get_provider_config("gemini").default_model == "gemini-pro"
