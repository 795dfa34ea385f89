"""Chat Core 顶层包。

该包提供多轮会话管理的核心实现，
包括配置加载、领域模型、Provider 适配（阻塞/流式）、
会话历史组装与每轮对话的原子持久化等能力。
"""

from chat_core.services.conversation_service import ConversationService, ConverseResult

__all__ = ["ConversationService", "ConverseResult"]
