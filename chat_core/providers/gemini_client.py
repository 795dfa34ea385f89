"""Gemini Provider 适配器。

使用 Google Generative Language REST API：
- 阻塞：POST {base_url}/models/{model}:generateContent
- 流式：POST {base_url}/models/{model}:streamGenerateContent?alt=sse
- 认证：x-goog-api-key 请求头

Gemini 原生使用 user/model 两种角色，history 可以直接映射为 contents。
config 原样作为 generationConfig 透传（temperature、maxOutputTokens 等）。
"""

import json
from dataclasses import asdict
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    GenerationError,
    NetworkError,
    ProviderTimeout,
    StreamError,
    ValidationError,
)
from chat_core.domain.models import ChatMessage, ChatRequest, ChatUsage, ChunkStream
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import check_response_status, read_json_body
from chat_core.providers.registry import GEMINI_CONFIG


class GeminiClient:
    """Gemini Provider 客户端实现。"""

    name = "gemini"

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
            with httpx.Client(timeout=self._timeout(req), trust_env=False) as client:
                resp = client.post(
                    self._url(req, "generateContent"),
                    json=self._build_payload(req),
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(message=f"gemini request timed out: {e}")
        except httpx.RequestError as e:
            raise NetworkError(message=str(e))
        check_response_status(resp, self.name)
        data = read_json_body(resp, self.name)
        text, finish_reason = self._extract_text(data)
        self._log_usage(data)
        if not text:
            if finish_reason == "SAFETY":
                raise GenerationError(code="BLOCKED", message="gemini blocked the response")
            raise GenerationError(code="EMPTY_RESPONSE", message="gemini returned no candidates")
        return text

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
        finished = False
        try:
            with httpx.Client(timeout=self._timeout(req), trust_env=False) as client:
                with client.stream(
                    "POST",
                    self._url(req, "streamGenerateContent"),
                    params={"alt": "sse"},
                    json=self._build_payload(req),
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
                        received = True
                        try:
                            data = json.loads(data_str)
                        except json.JSONDecodeError:
                            raise StreamError(message=f"malformed stream event: {data_str[:200]}")
                        if "error" in data:
                            err = data["error"] or {}
                            raise StreamError(message=str(err.get("message") or err), provider=self.name)
                        try:
                            text, finish_reason = self._extract_text(data)
                        except GenerationError as e:
                            raise StreamError(code=e.code, message=e.message, provider=self.name)
                        if finish_reason:
                            finished = True
                            self._log_usage(data)
                        if text:
                            yield text
                        if finish_reason == "SAFETY":
                            raise StreamError(code="BLOCKED", message="gemini blocked the response mid-stream")
                    if not finished:
                        raise StreamError(
                            code="STREAM_TRUNCATED", message="gemini stream ended without a finishReason", provider=self.name
                        )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(message=f"gemini stream timed out: {e}")
        except httpx.RequestError as e:
            if received:
                raise StreamError(message=f"gemini stream interrupted: {e}", provider=self.name)
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
        if not getattr(self._settings, "gemini_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY not set")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._settings.gemini_api_key,
            "Content-Type": "application/json",
        }

    def _timeout(self, req: ChatRequest) -> float:
        return req.timeout or self._settings.http_timeout

    def _url(self, req: ChatRequest, method: str) -> str:
        base = getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url
        model_cfg = GEMINI_CONFIG.model(req.model)
        return f"{base}/models/{model_cfg.provider_model}:{method}"

    @staticmethod
    def _build_payload(req: ChatRequest) -> Dict[str, Any]:
        contents = [{"role": m.role, "parts": [{"text": m.content}]} for m in req.history]
        contents.append({"role": "user", "parts": [{"text": req.prompt}]})
        payload: Dict[str, Any] = {"contents": contents}
        if req.config:
            payload["generationConfig"] = req.config
        return payload

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        """返回 (文本, finishReason)；prompt 被拦截时抛出 GenerationError。"""

        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise GenerationError(code="BLOCKED", message=f"prompt blocked: {feedback['blockReason']}")
        candidates = data.get("candidates") or []
        if not candidates:
            return "", None
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text") or "" for p in parts)
        return text, candidate.get("finishReason")

    def _log_usage(self, data: Dict[str, Any]) -> None:
        raw = data.get("usageMetadata")
        if not raw:
            return
        usage = ChatUsage(
            prompt_tokens=raw.get("promptTokenCount", 0),
            completion_tokens=raw.get("candidatesTokenCount", 0),
            total_tokens=raw.get("totalTokenCount", 0),
        )
        logger.info("Token usage", extra={"extra": {"provider": self.name, **asdict(usage)}})
