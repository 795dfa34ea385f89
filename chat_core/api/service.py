"""对外 API 服务模块。

提供简化的函数接口供上层应用（HTTP 路由等）调用，返回可直接序列化的 dict。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.providers import create_provider
from chat_core.services.conversation_service import ConversationService, ConverseResult
from chat_core.services.stream import PartialCallback

DEFAULT_SINGLE_PROMPT = "Write a story about a magic backpack."

_store: Optional[ConversationStore] = None
_service: Optional[ConversationService] = None


def get_default_service() -> ConversationService:
    """获取默认的 ConversationService 实例（单例）。"""
    global _store, _service
    if _store is None:
        _store = JsonConversationStore(root=settings.storage_root)
    if _service is None:
        _service = ConversationService(store=_store, generator=create_provider())
    return _service


def converse(
    prompt: str,
    conversation_id: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """运行一次阻塞式对话。

    Args:
        prompt: 用户输入内容
        conversation_id: 会话ID（可选，不提供则创建新会话）
        config: 透传给 Provider 的生成配置（可选）

    Returns:
        {"conversation_id": ..., "text": ...}

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        result = get_default_service().converse(prompt, conversation_id, config)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise
    return _result_to_dict(result)


def converse_partial(
    prompt: str,
    conversation_id: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    on_partial: Optional[PartialCallback] = None,
) -> Dict[str, Any]:
    """运行一次流式对话，增量文本通过 on_partial 推送。"""
    try:
        result = get_default_service().converse_partial(prompt, conversation_id, config, on_partial)
    except Exception as e:
        logger.error(f"Streaming chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise
    return _result_to_dict(result)


def generate_single_text(prompt: str = DEFAULT_SINGLE_PROMPT) -> str:
    """无会话的单次生成。"""
    return get_default_service().generate_single(prompt)


def list_conversations() -> List[Dict[str, Any]]:
    """列出所有会话（含消息）。"""
    return [_conversation_to_dict(c) for c in get_default_service().get_all_conversations()]


def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息。"""
    conv = get_default_service().get_conversation(conversation_id)
    return _conversation_to_dict(conv)["messages"]


def _result_to_dict(result: ConverseResult) -> Dict[str, Any]:
    return {"conversation_id": result.conversation_id, "text": result.text}


def _conversation_to_dict(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "created_at": conv.created_at.isoformat(),
        "updated_at": conv.updated_at.isoformat(),
        "messages": [
            {
                "role": m.role,
                "content": m.content,
                "created_at": m.created_at.isoformat(),
            }
            for m in conv.messages
        ],
    }
