from datetime import datetime, timezone

import pytest

from chat_core.domain.conversation import Conversation, Message
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import ChatMessage


def test_models_exist():
    cm = ChatMessage(role="user", content="hi")
    assert cm.role == "user"
    conv = Conversation(id="c1")
    assert conv.id == "c1"
    assert conv.messages == []
    m = Message(role="model", content="x")
    assert m.created_at.tzinfo == timezone.utc


def test_message_rejects_unknown_role():
    with pytest.raises(ValidationError) as exc:
        Message(role="assistant", content="x")
    assert exc.value.code == "INVALID_ROLE"


def test_message_rejects_non_string_content():
    with pytest.raises(ValidationError):
        Message(role="user", content=None)


def test_message_is_immutable():
    m = Message(role="user", content="x", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(AttributeError):
        m.content = "y"
