"""LLM Provider 集成层。

该包下的模块负责：
- 定义 ResponseGenerator 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (gemini_client、glm_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ValidationError
from chat_core.providers.base import ResponseGenerator
from chat_core.providers.gemini_client import GeminiClient
from chat_core.providers.glm_client import GlmClient
from chat_core.providers.registry import get_provider_config


def create_provider(name: Optional[str] = None) -> ResponseGenerator:
    """根据名称创建 Provider 实例，默认取配置中的 provider。"""

    provider_name = (name or getattr(settings, "default_provider", "gemini")).lower()
    try:
        get_provider_config(provider_name)
    except KeyError:
        raise ValidationError(code="UNKNOWN_PROVIDER", message=f"unknown provider: {provider_name!r}")
    if provider_name == "glm":
        return GlmClient(settings)
    return GeminiClient(settings)

