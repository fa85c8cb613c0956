"""Flush policies: which buffered messages leave now and which stay behind."""

import math
from dataclasses import dataclass, field

from debounce_buffer.config import BufferPattern
from debounce_buffer.models import BufferedMessage


@dataclass
class FlushSelection:
    flushed: list[BufferedMessage] = field(default_factory=list)
    retained: list[BufferedMessage] = field(default_factory=list)


def _collect_send(messages: list[BufferedMessage], max_size: int, priority_levels: int) -> FlushSelection:
    return FlushSelection(flushed=list(messages), retained=[])


def _throttle(messages: list[BufferedMessage], max_size: int, priority_levels: int) -> FlushSelection:
    count = min(len(messages), max_size)
    return FlushSelection(flushed=messages[:count], retained=messages[count:])


def _batch(messages: list[BufferedMessage], max_size: int, priority_levels: int) -> FlushSelection:
    # Fixed half-capacity chunk, independent of how much is buffered
    size = math.ceil(max_size / 2)
    return FlushSelection(flushed=messages[:size], retained=messages[size:])


def _priority(messages: list[BufferedMessage], max_size: int, priority_levels: int) -> FlushSelection:
    threshold = priority_levels - 1
    high = [m for m in messages if m.priority >= threshold]
    low = [m for m in messages if m.priority < threshold]
    # sorted() is stable, so equal priorities keep arrival order
    high = sorted(high, key=lambda m: m.priority, reverse=True)
    return FlushSelection(flushed=high, retained=low)


_POLICIES = {
    "collect_send": _collect_send,
    "throttle": _throttle,
    "batch": _batch,
    "priority": _priority,
}


def select_flush(
    messages: list[BufferedMessage],
    pattern: BufferPattern,
    max_size: int,
    priority_levels: int = 3,
) -> FlushSelection:
    """Split messages into the batch to flush and the remainder to keep.

    Pure function: the input list is never mutated.

    Args:
        messages: Buffered messages in arrival order.
        pattern: Name of the flush policy.
        max_size: Buffer capacity, used by ``throttle`` and ``batch``.
        priority_levels: Number of priority levels; messages at
            ``priority_levels - 1`` or above are flushed by ``priority``.

    Raises:
        ValueError: If the pattern is unknown.
    """
    try:
        policy = _POLICIES[pattern]
    except KeyError:
        raise ValueError(f"Unknown flush pattern: {pattern}") from None
    if not messages:
        return FlushSelection()
    return policy(list(messages), max_size, priority_levels)


def threshold_trigger(
    messages: list[BufferedMessage],
    pattern: BufferPattern,
    max_size: int,
    priority_levels: int = 3,
) -> str | None:
    """Return an early flush trigger ("size" or "priority") if one applies."""
    if len(messages) >= max_size:
        return "size"
    if pattern == "priority" and any(m.priority >= priority_levels - 1 for m in messages):
        return "priority"
    return None
