"""会话历史 → Provider 无关的轮次列表。"""

from typing import List

from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import ROLES, ChatMessage


def assemble_history(conversation: Conversation) -> List[ChatMessage]:
    """按存储顺序把消息映射为 ChatMessage，丢弃 created_at。

    空会话返回空列表（新对话）。遇到无法识别的 role 抛出 ValidationError。
    """

    history: List[ChatMessage] = []
    for index, message in enumerate(conversation.messages):
        role = getattr(message, "role", None)
        if role not in ROLES:
            raise ValidationError(
                code="INVALID_ROLE",
                message=f"message #{index} in {conversation.id} has unknown role {role!r}",
            )
        history.append(ChatMessage(role=role, content=message.content))
    return history
