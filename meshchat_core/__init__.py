"""meshchat_core 顶层包。

该包把带有会话标识的聊天消息路由到按会话隔离、长期存活的 AI 对话会话，
包括配置加载、领域模型、Provider 适配、会话路由与历史压缩、HTTP 传输层等能力。
"""

from meshchat_core.chat import Dispatcher, SessionWorker
from meshchat_core.domain.models import InboundMessage, Reply

__all__ = ["Dispatcher", "SessionWorker", "InboundMessage", "Reply"]
