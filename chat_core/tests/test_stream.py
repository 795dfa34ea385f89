import pytest

from chat_core.domain.exceptions import StreamError
from chat_core.domain.models import ChunkStream
from chat_core.services.stream import aggregate


def _tracked(chunks, fail_after=None):
    state = {"closed": False}

    def gen():
        try:
            for i, chunk in enumerate(chunks):
                if fail_after is not None and i == fail_after:
                    raise StreamError(message="connection reset")
                yield chunk
        finally:
            state["closed"] = True

    return ChunkStream(gen()), state


def test_aggregate_concatenates_in_order():
    assert aggregate(["hel", "lo", " ", "world"]) == "hello world"
    stream, state = _tracked(["a", "b", "c"])
    assert aggregate(stream) == "abc"
    assert state["closed"]


def test_aggregate_empty_sequence():
    assert aggregate([]) == ""
    stream, _ = _tracked([])
    assert aggregate(stream) == ""


def test_aggregate_reports_incremental_partials():
    seen = []
    text = aggregate(["Hi", " ", "there"], on_partial=seen.append)
    assert text == "Hi there"
    assert seen == ["Hi", " ", "there"]


def test_aggregate_propagates_stream_error():
    seen = []
    stream, state = _tracked(["a", "b", "c"], fail_after=2)
    with pytest.raises(StreamError):
        aggregate(stream, on_partial=seen.append)
    assert seen == ["a", "b"]
    assert state["closed"]


def test_aggregate_closes_source_when_callback_fails():
    stream, state = _tracked(["a", "b", "c"])

    def disconnect(chunk):
        raise ConnectionAbortedError("client went away")

    with pytest.raises(ConnectionAbortedError):
        aggregate(stream, on_partial=disconnect)
    assert state["closed"]


def test_chunk_stream_is_not_restartable():
    stream, _ = _tracked(["a"])
    assert aggregate(stream) == "a"
    with pytest.raises(StreamError) as exc:
        aggregate(stream)
    assert exc.value.code == "STREAM_CONSUMED"


def test_chunk_stream_cannot_be_consumed_after_close():
    stream, _ = _tracked(["a"])
    stream.close()
    assert stream.consumed
    with pytest.raises(StreamError):
        list(stream)
