"""Provider 抽象接口。

上层 ConversationService 不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- 每个厂商实现一个 ResponseGenerator（如 GeminiClient）。
- 负责：把 prompt + history + config 转成具体 API 请求，并把响应解析为文本。

阻塞与流式是两种独立的调用形态：只需要最终文本的调用方不必经过
流式缓冲；两者共享同一条历史组装与持久化路径。
"""

from typing import Any, Dict, Optional, Protocol, Sequence

import httpx

from chat_core.domain.exceptions import ApiError, GenerationError, RateLimitError
from chat_core.domain.models import ChatMessage, ChunkStream


class ResponseGenerator(Protocol):
    """文本生成 Provider 协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/统计。
    - generate_once: 阻塞调用，返回完整文本；history 为空即无状态单次生成。
    - generate_stream: 返回惰性的 ChunkStream，逐步产出增量文本。
    """

    name: str

    def generate_once(
        self,
        prompt: str,
        history: Optional[Sequence[ChatMessage]] = None,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    def generate_stream(
        self,
        prompt: str,
        history: Optional[Sequence[ChatMessage]] = None,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ChunkStream:
        ...


def check_response_status(resp: httpx.Response, provider: str) -> None:
    """把 HTTP 错误状态统一映射为 RateLimitError / ApiError。"""

    if resp.status_code == 429:
        raise RateLimitError(message=f"{provider} rate limit", provider=provider)
    if resp.status_code >= 400:
        raise ApiError(message=resp.text, http_status=resp.status_code, provider=provider)


def read_json_body(resp: httpx.Response, provider: str) -> Dict[str, Any]:
    """解析 2xx 响应体；非 JSON（例如代理返回的 HTML 页面）映射为 GenerationError。"""

    try:
        data = resp.json()
    except ValueError as e:
        raise GenerationError(
            code="INVALID_RESPONSE", message=f"{provider} returned a non-JSON body: {e}", provider=provider
        )
    if not isinstance(data, dict):
        raise GenerationError(code="INVALID_RESPONSE", message=f"{provider} returned an unexpected body", provider=provider)
    return data
