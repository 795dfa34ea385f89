from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Protocol

from .exceptions import ValidationError
from .models import ROLES, Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """会话中的一条消息，写入后不可修改。

    content 是一整轮的完整文本，而不是流式片段。
    """

    role: Role
    content: str
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"unknown message role: {self.role!r}")
        if not isinstance(self.content, str):
            raise ValidationError(code="INVALID_CONTENT", message="message content must be a string")


@dataclass
class Conversation:
    id: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class ConversationStore(Protocol):
    def create(self) -> Conversation:
        ...

    def get(self, conversation_id: str) -> Conversation:
        ...

    def append_turn(self, conversation_id: str, user_message: Message, model_message: Message) -> Conversation:
        """原子地追加一轮（user + model）；失败时两条都不可见。"""
        ...

    def list(self) -> List[Conversation]:
        ...
