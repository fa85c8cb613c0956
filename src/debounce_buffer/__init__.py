"""Store-coordinated message debouncing for stateless invocations."""

from debounce_buffer.config import BufferConfig, Settings, get_settings
from debounce_buffer.coordinator import DebounceCoordinator
from debounce_buffer.errors import (
    BufferVanished,
    ConfigurationInvalid,
    DebounceError,
    SerializationError,
    StoreUnavailable,
)
from debounce_buffer.models import (
    AddResult,
    BufferedMessage,
    BufferState,
    BufferStats,
    FlushResult,
)
from debounce_buffer.store import BufferStore, InMemoryStore, RedisStore

__all__ = [
    "AddResult",
    "BufferConfig",
    "BufferState",
    "BufferStats",
    "BufferStore",
    "BufferVanished",
    "BufferedMessage",
    "ConfigurationInvalid",
    "DebounceCoordinator",
    "DebounceError",
    "FlushResult",
    "InMemoryStore",
    "RedisStore",
    "SerializationError",
    "Settings",
    "StoreUnavailable",
    "get_settings",
]
