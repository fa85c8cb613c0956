"""Buffer state model and its JSON codec."""

import logging
import math
import time
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from debounce_buffer.config import BufferPattern
from debounce_buffer.errors import SerializationError

logger = logging.getLogger(__name__)

FlushTrigger = Literal["time", "size", "manual", "priority"]
Role = Literal["master", "slave"]


def new_message_id() -> str:
    """Millisecond prefix keeps ids sortable; the uuid part keeps them unique."""
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex}"


class BufferedMessage(BaseModel):
    id: str = Field(default_factory=new_message_id)
    content: str
    timestamp: float = Field(default_factory=time.time)
    priority: int = 0
    metadata: dict[str, Any] | None = None
    originator_id: str | None = None

    model_config = {"frozen": True}


class BufferState(BaseModel):
    buffer_id: str
    pattern: BufferPattern
    messages: list[BufferedMessage] = Field(default_factory=list)
    total_messages: int = 0
    deadline: float
    created_at: float
    last_flush_at: float | None = None
    max_size: int
    priority_levels: int = 3
    approx_size_bytes: int = 0
    leader_id: str | None = None
    leader_heartbeat: float | None = None
    # Invocation that performed the most recent master flush
    last_flush_id: str | None = None

    def append(self, message: BufferedMessage, deadline: float) -> int:
        """Append a message and push the deadline forward. Returns its 1-based position."""
        self.messages.append(message)
        self.total_messages += 1
        self.deadline = max(self.deadline, deadline)
        self.approx_size_bytes = approx_size(self.messages)
        return len(self.messages)

    def replace_messages(self, messages: list[BufferedMessage]) -> None:
        self.messages = list(messages)
        self.approx_size_bytes = approx_size(self.messages)

    def leader_alive(self, now: float, lease_seconds: float) -> bool:
        if self.leader_id is None or self.leader_heartbeat is None:
            return False
        return now - self.leader_heartbeat <= lease_seconds

    def ttl(self, now: float, retention_seconds: float) -> int:
        """Seconds until the stored copy should expire on its own."""
        return max(1, math.ceil(self.deadline - now + retention_seconds))


class FlushResult(BaseModel):
    flushed_messages: list[BufferedMessage] = Field(default_factory=list)
    remaining_messages: list[BufferedMessage] = Field(default_factory=list)
    trigger: FlushTrigger
    flush_time: float
    processing_time: float = 0.0


class AddResult(BaseModel):
    buffer_id: str
    message_id: str
    role: Role
    accepted: bool = True
    pending: bool = False
    position: int
    estimated_flush_at: float
    cancelled: bool = False
    flush_result: FlushResult | None = None


class BufferStats(BaseModel):
    total_buffers: int = 0
    total_messages: int = 0
    average_buffer_size: float = 0.0
    oldest_message: float = 0.0
    newest_message: float = 0.0
    flushes_last_24h: int = 0


def approx_size(messages: list[BufferedMessage]) -> int:
    return sum(len(m.model_dump_json()) for m in messages)


def encode_state(state: BufferState) -> str:
    return state.model_dump_json()


def decode_state(key: str, raw: str | bytes) -> BufferState:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SerializationError(key, str(exc)) from exc
    try:
        return BufferState.model_validate_json(raw)
    except ValidationError as exc:
        raise SerializationError(key, str(exc)) from exc


def decode_state_or_none(key: str, raw: str | bytes | None) -> BufferState | None:
    """Decode stored state; undecodable values are treated as absent."""
    if raw is None:
        return None
    try:
        return decode_state(key, raw)
    except SerializationError:
        logger.warning("Ignoring undecodable buffer state at %s", key, exc_info=True)
        return None
