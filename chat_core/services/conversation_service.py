"""会话服务核心模块。

串联：解析/创建会话 → 组装历史 → 调用 provider（阻塞或流式）→ 原子写入一轮 → 返回结果。
"""

import logging
import threading
import time
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore, Message
from chat_core.domain.exceptions import (
    NotFoundError,
    PersistenceAfterGenerationError,
    StorageError,
    ValidationError,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ResponseGenerator
from chat_core.services.history import assemble_history
from chat_core.services.stream import PartialCallback, aggregate


@dataclass
class ConverseResult:
    conversation_id: str
    text: str


@dataclass
class ConversationEvent:
    """converse_stream 产生的流式事件。

    kind:
        - "delta": 一段增量文本。
        - "final": 本轮已写入存储，text 为完整回答。
    """

    kind: Literal["delta", "final"]
    conversation_id: str
    text: str
    conversation: Optional[Conversation] = None


class _TurnLocks:
    """按会话 ID 分配的互斥锁，最后一个持有者离开时回收。"""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # conversation_id -> [锁, 持有/等待者数量]
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(conversation_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[conversation_id]


class ConversationService:
    """多轮会话编排器。

    serialize_turns=True 时，同一会话从读取历史到写入一轮的整个过程持有该会话的锁，
    并发调用会依次看到彼此提交的轮次；为 False 时两个并发调用可能读到相同历史、
    各自追加，彼此的生成都看不到对方这一轮。
    """

    def __init__(
        self,
        store: ConversationStore,
        generator: ResponseGenerator,
        serialize_turns: Optional[bool] = None,
    ):
        self._store = store
        self._generator = generator
        if serialize_turns is None:
            serialize_turns = getattr(settings, "serialize_turns", False)
        self._turn_locks = _TurnLocks() if serialize_turns else None

    # ---- 阻塞 ----

    def converse(
        self,
        prompt: str,
        conversation_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ConverseResult:
        """一次阻塞式对话，返回会话 ID 与完整回答。"""

        self._validate_prompt(prompt)
        log_ctx = self._new_log_ctx(mode="once")
        start_time = time.time()
        with self._open_turn(conversation_id, log_ctx) as conv:
            history = assemble_history(conv)
            self._log(logging.INFO, "Calling provider", log_ctx, history_len=len(history))
            try:
                text = self._generator.generate_once(prompt, history, config or {}, timeout)
            except Exception as e:
                self._log(logging.WARNING, "Generation failed", log_ctx, error=repr(e))
                raise
            self._persist_turn(conv.id, prompt, text, log_ctx)
        self._log(logging.INFO, "Completed turn", log_ctx, elapsed_seconds=round(time.time() - start_time, 2))
        return ConverseResult(conversation_id=conv.id, text=text)

    # ---- 流式 ----

    def converse_partial(
        self,
        prompt: str,
        conversation_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        on_partial: Optional[PartialCallback] = None,
        timeout: Optional[float] = None,
    ) -> ConverseResult:
        """流式对话：每个增量片段回调 on_partial，结束后返回完整回答。

        on_partial 抛出异常（例如客户端断开）视为取消：关闭 provider 流，不写入任何消息。
        """

        self._validate_prompt(prompt)
        log_ctx = self._new_log_ctx(mode="partial")
        start_time = time.time()
        with self._open_turn(conversation_id, log_ctx) as conv:
            history = assemble_history(conv)
            self._log(logging.INFO, "Calling provider (stream)", log_ctx, history_len=len(history))
            try:
                stream = self._generator.generate_stream(prompt, history, config or {}, timeout)
                text = aggregate(stream, on_partial)
            except Exception as e:
                self._log(logging.WARNING, "Stream aborted", log_ctx, error=repr(e))
                raise
            self._persist_turn(conv.id, prompt, text, log_ctx)
        self._log(logging.INFO, "Completed turn", log_ctx, elapsed_seconds=round(time.time() - start_time, 2))
        return ConverseResult(conversation_id=conv.id, text=text)

    def converse_stream(
        self,
        prompt: str,
        conversation_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[ConversationEvent]:
        """以生成器形式产出增量事件，最后产出一个 "final" 事件。

        消费方提前 close() 生成器时，provider 流随之关闭，本轮不会被写入。
        """

        self._validate_prompt(prompt)
        log_ctx = self._new_log_ctx(mode="stream")
        with self._open_turn(conversation_id, log_ctx) as conv:
            history = assemble_history(conv)
            self._log(logging.INFO, "Calling provider (stream)", log_ctx, history_len=len(history))
            pieces: List[str] = []
            completed = False
            stream = self._generator.generate_stream(prompt, history, config or {}, timeout)
            try:
                for chunk in stream:
                    pieces.append(chunk)
                    yield ConversationEvent(kind="delta", conversation_id=conv.id, text=chunk)
                completed = True
            finally:
                stream.close()
                if not completed:
                    self._log(logging.WARNING, "Stream aborted", log_ctx, received_chunks=len(pieces))
            text = "".join(pieces)
            updated = self._persist_turn(conv.id, prompt, text, log_ctx)
        yield ConversationEvent(kind="final", conversation_id=conv.id, text=text, conversation=updated)

    # ---- 其他 ----

    def generate_single(
        self,
        prompt: str,
        config: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """无会话、无持久化的单次生成。"""

        self._validate_prompt(prompt)
        return self._generator.generate_once(prompt, None, config or {}, timeout)

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self._store.get(conversation_id)

    def get_all_conversations(self) -> List[Conversation]:
        return self._store.list()

    # ---- 内部方法 ----

    def _resolve(self, conversation_id: Optional[str], log_ctx: Dict[str, Any]) -> Conversation:
        if conversation_id is None:
            conv = self._store.create()
            log_ctx["conversation_id"] = conv.id
            self._log(logging.INFO, "Created new conversation", log_ctx)
            return conv
        log_ctx["conversation_id"] = conversation_id
        return self._store.get(conversation_id)

    def _persist_turn(self, conversation_id: str, prompt: str, text: str, log_ctx: Dict[str, Any]) -> Conversation:
        user_message, model_message = self._build_turn(prompt, text)
        try:
            conv = self._store.append_turn(conversation_id, user_message, model_message)
        except (StorageError, NotFoundError) as e:
            self._log(logging.ERROR, "Failed to store turn", log_ctx, error_code=e.code)
            raise PersistenceAfterGenerationError(text=text, conversation_id=conversation_id, cause=e)
        self._log(logging.INFO, "Stored turn", log_ctx, message_count=len(conv.messages))
        return conv

    @staticmethod
    def _build_turn(prompt: str, text: str) -> Tuple[Message, Message]:
        user_message = Message(role="user", content=prompt)
        model_message = Message(role="model", content=text)
        return user_message, model_message

    @contextmanager
    def _open_turn(self, conversation_id: Optional[str], log_ctx: Dict[str, Any]) -> Iterator[Conversation]:
        """解析会话并在整轮期间持有该会话的锁（若启用串行化）。"""

        if conversation_id is None:
            conv = self._resolve(None, log_ctx)
            with self._hold(conv.id):
                yield conv
        else:
            with self._hold(conversation_id):
                yield self._resolve(conversation_id, log_ctx)

    def _hold(self, conversation_id: str):
        if self._turn_locks is None:
            return nullcontext()
        return self._turn_locks.hold(conversation_id)

    @staticmethod
    def _validate_prompt(prompt: Any) -> None:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError(code="INVALID_PROMPT", message="prompt must be a non-empty string")

    @staticmethod
    def _new_log_ctx(**fields: Any) -> Dict[str, Any]:
        return {"trace_id": f"tr-{uuid4().hex}", **fields}

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

