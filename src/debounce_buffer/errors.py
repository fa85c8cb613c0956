"""Exception hierarchy for buffer coordination."""


class DebounceError(Exception):
    """Base class for all debounce buffer errors."""


class StoreUnavailable(DebounceError):
    """The backing store could not be reached. Safe to retry the whole call."""

    retryable = True

    def __init__(self, message: str, attempts: int = 1) -> None:
        self.attempts = attempts
        super().__init__(message)


class BufferVanished(DebounceError):
    """Buffer state disappeared while a master was polling it."""

    def __init__(self, buffer_id: str) -> None:
        self.buffer_id = buffer_id
        super().__init__(f"Buffer {buffer_id!r} vanished while its master was polling")


class ConfigurationInvalid(DebounceError, ValueError):
    """Rejected buffer configuration."""


class SerializationError(DebounceError):
    """A stored value could not be decoded as buffer state."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        super().__init__(f"Invalid buffer state at {key!r}: {reason}")
