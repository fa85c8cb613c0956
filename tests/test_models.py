"""Tests for debounce_buffer.models module."""

import pytest

from debounce_buffer.errors import SerializationError
from debounce_buffer.models import (
    BufferedMessage,
    BufferState,
    decode_state,
    decode_state_or_none,
    encode_state,
    new_message_id,
)


def _state(**overrides) -> BufferState:
    fields = {
        "buffer_id": "chat-1",
        "pattern": "collect_send",
        "deadline": 1000.0,
        "created_at": 990.0,
        "max_size": 10,
    }
    fields.update(overrides)
    return BufferState(**fields)


def test_message_ids_are_unique():
    ids = {new_message_id() for _ in range(1000)}
    assert len(ids) == 1000
    assert all(i.startswith("msg_") for i in ids)


def test_message_defaults():
    msg = BufferedMessage(content="hi")
    assert msg.priority == 0
    assert msg.metadata is None
    assert msg.originator_id is None
    assert msg.timestamp > 0



def test_state_defaults():
    state = _state()
    assert state.priority_levels == 3
    assert state.last_flush_id is None
    assert decode_state("k", encode_state(_state(last_flush_id="inv-1"))).last_flush_id == "inv-1"


def test_append_extends_deadline_forward_only():
    state = _state(deadline=1000.0)
    state.append(BufferedMessage(content="a"), deadline=1005.0)
    assert state.deadline == 1005.0
    state.append(BufferedMessage(content="b"), deadline=1001.0)
    assert state.deadline == 1005.0


def test_append_counts_and_sizes():
    state = _state()
    assert state.append(BufferedMessage(content="a"), 0) == 1
    assert state.append(BufferedMessage(content="b"), 0) == 2
    assert state.total_messages == 2
    assert state.approx_size_bytes > 0


def test_replace_messages_keeps_total():
    state = _state()
    for text in "abc":
        state.append(BufferedMessage(content=text), 0)
    state.replace_messages(state.messages[2:])
    assert [m.content for m in state.messages] == ["c"]
    assert state.total_messages == 3


def test_leader_alive():
    state = _state(leader_id="inv-1", leader_heartbeat=100.0)
    assert state.leader_alive(now=105.0, lease_seconds=10)
    assert not state.leader_alive(now=111.0, lease_seconds=10)
    assert not _state().leader_alive(now=0.0, lease_seconds=10)


def test_ttl_exceeds_deadline():
    state = _state(deadline=1000.0)
    assert state.ttl(now=990.0, retention_seconds=60) == 70
    # Past deadline still keeps a positive ttl
    assert state.ttl(now=5000.0, retention_seconds=60) == 1


def test_codec_preserves_message_order():
    state = _state()
    for text in ["first", "second", "third"]:
        state.append(BufferedMessage(content=text, metadata={"k": text}), 0)
    decoded = decode_state("k", encode_state(state))
    assert [m.content for m in decoded.messages] == ["first", "second", "third"]
    assert decoded == state


def test_decode_accepts_bytes():
    state = _state()
    assert decode_state("k", encode_state(state).encode()) == state


@pytest.mark.parametrize("raw", ["not json", "{}", '{"buffer_id": 1}', b"\xff\xfe"])
def test_decode_invalid_raises(raw):
    with pytest.raises(SerializationError) as exc_info:
        decode_state("buffer:state:x", raw)
    assert exc_info.value.key == "buffer:state:x"


def test_decode_or_none_treats_garbage_as_absent(caplog):
    assert decode_state_or_none("k", None) is None
    with caplog.at_level("WARNING"):
        assert decode_state_or_none("k", "garbage") is None
    assert "undecodable" in caplog.text
