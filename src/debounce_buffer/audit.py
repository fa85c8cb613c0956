"""Best-effort audit trail of accepted messages and flush events."""

import json
import logging

from debounce_buffer.models import BufferedMessage, FlushResult
from debounce_buffer.store import BufferStore

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(
        self,
        store: BufferStore,
        namespace: str,
        max_length: int = 10000,
        flush_max_length: int = 1000,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._namespace = namespace
        self._max_length = max_length
        self._flush_max_length = flush_max_length
        self.enabled = enabled

    def message_log_key(self, buffer_id: str) -> str:
        return f"{self._namespace}:stream:{buffer_id}"

    @property
    def flush_log_key(self) -> str:
        return f"{self._namespace}:flushes"

    async def record_message(self, buffer_id: str, message: BufferedMessage) -> None:
        fields = {
            "messageId": message.id,
            "content": message.content,
            "timestamp": str(message.timestamp),
            "priority": str(message.priority),
        }
        if message.originator_id:
            fields["originatorId"] = message.originator_id
        if message.metadata:
            fields["metadata"] = json.dumps(message.metadata, default=str)
        await self._append(self.message_log_key(buffer_id), fields, self._max_length)

    async def record_flush(self, buffer_id: str, result: FlushResult) -> None:
        fields = {
            "bufferId": buffer_id,
            "trigger": result.trigger,
            "messageCount": str(len(result.flushed_messages)),
            "remainingCount": str(len(result.remaining_messages)),
            "timestamp": str(result.flush_time),
        }
        await self._append(self.flush_log_key, fields, self._flush_max_length)

    async def count_flushes_since(self, since: float) -> int:
        if not self.enabled:
            return 0
        try:
            entries = await self._store.read_log(self.flush_log_key, since_ms=int(since * 1000))
        except Exception:
            logger.warning("Could not read flush log %s", self.flush_log_key, exc_info=True)
            return 0
        return len(entries)

    async def _append(self, key: str, fields: dict[str, str], max_length: int) -> None:
        # Never let audit failures reach the buffer/flush path
        if not self.enabled:
            return
        try:
            await self._store.append_log(key, fields)
            await self._store.trim_log(key, max_length)
        except Exception:
            logger.warning("Audit log write to %s failed", key, exc_info=True)
