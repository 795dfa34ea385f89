"""GLM / BigModel Provider 适配器。

接口风格与 OpenAI 类似，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

GLM 没有 "model" 角色，历史中的 model 消息以 assistant 身份发送。
config 中的字段（temperature/top_p/max_tokens 等）直接合并进请求体。
"""

import json
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import GenerationError, NetworkError, ProviderTimeout, StreamError, ValidationError
from chat_core.domain.models import ChatMessage, ChatRequest, ChunkStream
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import check_response_status, read_json_body
from chat_core.providers.registry import GLM_CONFIG

_ROLE_MAP = {"user": "user", "model": "assistant"}


class GlmClient:
    """GLM / BigModel Provider 客户端实现。"""

    name = "glm"

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 非流式 ----

    def generate_once(
        self,
        prompt: str,
        history: Optional[Sequence[ChatMessage]] = None,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        req = self._build_request(prompt, history, config, timeout)
        self._ensure_api_key()
        try:
            with httpx.Client(timeout=req.timeout or self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    self._url(),
                    json=self._build_payload(req, stream=False),
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(message=f"glm request timed out: {e}")
        except httpx.RequestError as e:
            raise NetworkError(message=str(e))
        check_response_status(resp, self.name)
        data = read_json_body(resp, self.name)
        self._log_usage(data)
        choices = data.get("choices") or []
        if not choices:
            raise GenerationError(code="EMPTY_RESPONSE", message="glm returned no choices")
        content = (choices[0].get("message") or {}).get("content")
        if not content:
            raise GenerationError(code="EMPTY_RESPONSE", message="glm returned an empty message")
        return content

    # ---- 流式 ----

    def generate_stream(
        self,
        prompt: str,
        history: Optional[Sequence[ChatMessage]] = None,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ChunkStream:
        req = self._build_request(prompt, history, config, timeout)
        return ChunkStream(self._iter_chunks(req))

    def _iter_chunks(self, req: ChatRequest) -> Iterator[str]:
        self._ensure_api_key()
        received = False
        try:
            with httpx.Client(timeout=req.timeout or self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    self._url(),
                    json=self._build_payload(req, stream=True),
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        check_response_status(resp, self.name)
                    for line in resp.iter_lines():
                        data_str = line.strip()
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        if not data_str:
                            continue
                        if data_str == "[DONE]":
                            return
                        received = True
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            raise StreamError(message=f"malformed stream event: {data_str[:200]}")
                        if "error" in payload_chunk:
                            raise StreamError(message=str(payload_chunk["error"]), provider=self.name)
                        self._log_usage(payload_chunk)
                        for choice in payload_chunk.get("choices", []):
                            delta = (choice.get("delta") or {}).get("content")
                            if delta:
                                yield delta
                    raise StreamError(
                        code="STREAM_TRUNCATED", message="glm stream ended without [DONE]", provider=self.name
                    )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(message=f"glm stream timed out: {e}")
        except httpx.RequestError as e:
            if received:
                raise StreamError(message=f"glm stream interrupted: {e}", provider=self.name)
            raise NetworkError(message=str(e))

    # ---- 辅助方法 ----

    def _build_request(
        self,
        prompt: str,
        history: Optional[Sequence[ChatMessage]],
        config: Optional[Dict[str, Any]],
        timeout: Optional[float],
    ) -> ChatRequest:
        return ChatRequest(
            provider=self.name,
            model=getattr(self._settings, "default_model", "chat"),
            prompt=prompt,
            history=list(history or []),
            config=dict(config or {}),
            timeout=timeout,
        )

    def _ensure_api_key(self) -> None:
        if not getattr(self._settings, "glm_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GLM_API_KEY not set")

    def _url(self) -> str:
        base = getattr(self._settings, "glm_base_url", None) or GLM_CONFIG.base_url
        return f"{base}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.glm_api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        model_cfg = GLM_CONFIG.model(req.model)
        msgs: List[Dict[str, str]] = [{"role": _ROLE_MAP[m.role], "content": m.content} for m in req.history]
        msgs.append({"role": "user", "content": req.prompt})
        payload: Dict[str, Any] = {"max_tokens": model_cfg.max_tokens, **req.config}
        payload.update({"model": model_cfg.provider_model, "messages": msgs, "stream": stream})
        return payload

    def _log_usage(self, data: Dict[str, Any]) -> None:
        usage = data.get("usage")
        if usage:
            logger.info("Token usage", extra={"extra": {"provider": self.name, **usage}})
