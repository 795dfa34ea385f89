"""统一的生成请求与流式数据模型。

本模块定义了会话服务与不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条与 Provider 无关的历史轮次（user/model + 文本）。
- ChatRequest: 发给底层 Provider 的完整请求（prompt + history + config）。
- ChatUsage: Provider 返回的 token 统计。
- ChunkStream: 流式生成的文本片段序列，只能消费一次。

所有 Provider 适配器（如 GeminiClient）都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Optional

from chat_core.domain.exceptions import StreamError


# 会话中只允许两种角色：用户与模型
Role = Literal["user", "model"]
ROLES = ("user", "model")


@dataclass(frozen=True)
class ChatMessage:
    """一条历史轮次，不包含时间戳等存储细节。"""

    role: Role
    content: str


@dataclass
class ChatRequest:
    """一次完整的生成请求。

    Provider 适配层负责把本结构转换成各家 API 的 JSON 请求体。
    """

    provider: str  # 逻辑 Provider 名，如 "gemini"
    model: str  # 逻辑模型名，如 "chat"（再由 registry 映射为真实模型名）
    prompt: str
    history: List[ChatMessage] = field(default_factory=list)
    # 不透明的生成配置，原样透传给 Provider
    config: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChunkStream:
    """流式生成的文本片段序列。

    - 惰性：只有迭代时才会真正发起/读取 Provider 响应。
    - 不可重启：第二次迭代会抛出 StreamError(code="STREAM_CONSUMED")。
    - close() 会关闭底层生成器，从而释放 HTTP 连接。
    """

    def __init__(self, source: Iterator[str]):
        self._source = source
        self._started = False
        self._closed = False

    def __iter__(self) -> Iterator[str]:
        if self._started:
            raise StreamError(code="STREAM_CONSUMED", message="chunk stream can only be consumed once")
        self._started = True
        return self._iterate()

    def _iterate(self) -> Iterator[str]:
        try:
            for chunk in self._source:
                yield chunk
        finally:
            self.close()

    @property
    def consumed(self) -> bool:
        return self._started

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._started = True
        close = getattr(self._source, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> "ChunkStream":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False
