"""LLM Provider 集成层。

该包下的模块负责：
- 定义后端与会话的抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供具体实现 (gemini_client)。
"""

from typing import Dict, Optional, Type

from meshchat_core.config.settings import settings
from meshchat_core.domain.exceptions import ValidationError
from meshchat_core.providers.base import ChatBackend, ChatSession
from meshchat_core.providers.gemini_client import GeminiClient
from meshchat_core.providers.registry import get_provider_config

# registry 中的 provider 名称 -> 客户端实现
_CLIENTS: Dict[str, Type] = {
    "gemini": GeminiClient,
}


def create_backend(name: Optional[str] = None, cfg=None) -> ChatBackend:
    """根据名称创建后端客户端实例，默认取配置中的 provider。"""

    cfg = cfg or settings
    provider_name = name or getattr(cfg, "default_provider", "gemini")
    try:
        provider = get_provider_config(provider_name)
    except KeyError:
        raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider_name!r}") from None
    return _CLIENTS[provider.name](cfg)


__all__ = ["ChatBackend", "ChatSession", "GeminiClient", "create_backend"]
