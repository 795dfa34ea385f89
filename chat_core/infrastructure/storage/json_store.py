import json
import os
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore, Message
from chat_core.domain.exceptions import NotFoundError, StorageError, ValidationError

_ID_PATTERN = re.compile(r"^c-[0-9a-f]{32}$")


def _dump_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _load_ts(value: Any) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """每个会话一个 JSON 文档的本地存储。

    目录结构::

        <root>/conversations/<conversation_id>.json

    所有写入都先写临时文件再 os.replace，保证整份文档要么是旧版本、
    要么是新版本，一轮对话的 user/model 两条消息总是一起出现。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        # 同一进程内串行化 read-modify-write，避免并发追加互相覆盖
        self._lock = threading.Lock()

    def create(self) -> Conversation:
        conv = Conversation(id=f"c-{uuid4().hex}")
        with self._lock:
            self._write(conv)
        return conv

    def get(self, conversation_id: str) -> Conversation:
        return self._read(self._path_for(conversation_id), conversation_id)

    def append_turn(self, conversation_id: str, user_message: Message, model_message: Message) -> Conversation:
        if user_message.role != "user" or model_message.role != "model":
            raise ValidationError(
                code="INVALID_TURN",
                message=f"a turn is one user message followed by one model message, "
                f"got {user_message.role!r}/{model_message.role!r}",
            )
        path = self._path_for(conversation_id)
        with self._lock:
            conv = self._read(path, conversation_id)
            conv.messages.extend([user_message, model_message])
            conv.updated_at = datetime.now(timezone.utc)
            self._write(conv)
        return conv

    def list(self) -> List[Conversation]:
        items: List[Conversation] = []
        for path in self._conv_root.glob("c-*.json"):
            try:
                items.append(self._read(path, path.stem))
            except NotFoundError:
                # glob 之后文件被移除
                continue
        items.sort(key=lambda c: (c.created_at, c.id))
        return items

    def _path_for(self, conversation_id: str) -> Path:
        if not isinstance(conversation_id, str) or not _ID_PATTERN.match(conversation_id):
            raise NotFoundError(message=f"conversation not found: {conversation_id!r}")
        return self._conv_root / f"{conversation_id}.json"

    def _read(self, path: Path, conversation_id: str) -> Conversation:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(message=f"conversation not found: {conversation_id!r}")
        except OSError as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))
        try:
            data = json.loads(raw)
            return self._to_conversation(data)
        except ValidationError:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=f"corrupt conversation {conversation_id}: {e}")

    def _write(self, conv: Conversation) -> None:
        path = self._conv_root / f"{conv.id}.json"
        tmp_path = self._conv_root / f"{conv.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(self._to_payload(conv), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_payload(conv: Conversation) -> Dict[str, Any]:
        return {
            "id": conv.id,
            "created_at": _dump_ts(conv.created_at),
            "updated_at": _dump_ts(conv.updated_at),
            "messages": [
                {"role": m.role, "content": m.content, "created_at": _dump_ts(m.created_at)}
                for m in conv.messages
            ],
        }

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            messages=[
                Message(role=m["role"], content=m["content"], created_at=_load_ts(m["created_at"]))
                for m in data.get("messages") or []
            ],
            created_at=_load_ts(data["created_at"]),
            updated_at=_load_ts(data["updated_at"]),
        )
