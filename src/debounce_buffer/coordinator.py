"""Debounce coordinator — master/slave election and flush over a shared store.

Every call to :meth:`DebounceCoordinator.add_message` is an independent
invocation. The first one to create the buffer becomes the master: it polls
the stored deadline until it elapses and then flushes. Later callers are
slaves: they append their message, push the deadline forward and return
immediately. No in-process timer is involved; all coordination goes through
the store.

State machine per invocation:
    ABSENT → ELECTING → MASTER_POLLING → FLUSHING
    ABSENT → SLAVE_RETURNED
    any    → CLEARED (cancel flag, clear_buffer or host cancellation)
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from debounce_buffer.audit import AuditLog
from debounce_buffer.config import BufferConfig
from debounce_buffer.errors import BufferVanished, ConfigurationInvalid, StoreUnavailable
from debounce_buffer.models import (
    AddResult,
    BufferedMessage,
    BufferState,
    BufferStats,
    FlushResult,
    FlushTrigger,
    decode_state_or_none,
    encode_state,
)
from debounce_buffer.policy import select_flush, threshold_trigger
from debounce_buffer.retry import MaxRetriesExceeded, is_transient, retry_with_backoff
from debounce_buffer.store import BufferStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATS_WINDOW_SECONDS = 24 * 60 * 60


class DebounceCoordinator:
    def __init__(self, store: BufferStore, config: BufferConfig | None = None) -> None:
        if config is None:
            config = BufferConfig()
        if not isinstance(config, BufferConfig):
            raise ConfigurationInvalid(f"Expected BufferConfig, got {type(config).__name__}")
        self._store = store
        self._config = config
        self._audit = self._build_audit_log(config)

    def _build_audit_log(self, config: BufferConfig) -> AuditLog:
        return AuditLog(
            self._store,
            config.key_namespace,
            max_length=config.audit_log_max_length,
            flush_max_length=config.flush_log_max_length,
            enabled=config.enable_audit_log,
        )

    # --- Configuration ---

    def get_config(self) -> BufferConfig:
        return self._config.model_copy()

    def update_config(self, **changes: Any) -> BufferConfig:
        """Validate and apply new options. Raises ConfigurationInvalid."""
        self._config = self._config.merged(**changes)
        self._audit = self._build_audit_log(self._config)
        return self.get_config()

    # --- Keys ---

    def _state_key(self, buffer_id: str) -> str:
        return f"{self._config.key_namespace}:state:{buffer_id}"

    def _cancel_key(self, buffer_id: str) -> str:
        return f"{self._config.key_namespace}:cancel:{buffer_id}"

    # --- Store access ---

    async def _once(self, fn: Callable[..., Coroutine[Any, Any, T]], *args: Any) -> T:
        """Single attempt; transient I/O errors surface as StoreUnavailable."""
        try:
            return await fn(*args)
        except Exception as exc:
            if is_transient(exc):
                raise StoreUnavailable(f"Store operation failed: {exc}") from exc
            raise

    async def _retrying(self, fn: Callable[..., Coroutine[Any, Any, T]], *args: Any) -> T:
        """Retry transient I/O errors with backoff, then surface StoreUnavailable."""
        cfg = self._config
        try:
            return await retry_with_backoff(
                fn,
                *args,
                max_retries=cfg.store_max_retries,
                backoff_base=cfg.store_backoff_base,
                backoff_max=cfg.store_backoff_max,
                retriable=is_transient,
            )
        except MaxRetriesExceeded as exc:
            raise StoreUnavailable(
                f"Store unavailable after {exc.attempts} attempts: {exc.last_error}",
                attempts=exc.attempts,
            ) from exc

    def _fresh_state(self, buffer_id: str, invocation_id: str, now: float) -> BufferState:
        cfg = self._config
        return BufferState(
            buffer_id=buffer_id,
            pattern=cfg.pattern,
            deadline=now + cfg.debounce_window_seconds,
            created_at=now,
            max_size=cfg.max_size,
            priority_levels=cfg.priority_levels,
            leader_id=invocation_id,
            leader_heartbeat=now,
        )

    # --- Public API ---

    async def add_message(
        self,
        buffer_id: str,
        content: str,
        priority: int = 0,
        metadata: dict[str, Any] | None = None,
        originator_id: str | None = None,
    ) -> AddResult:
        """Contribute a message to a buffer.

        Returns immediately for slaves. For the master, blocks until the
        debounce window has elapsed and returns the flush result.

        Raises:
            StoreUnavailable: The store could not be reached.
            BufferVanished: The buffer was deleted while this call was master.
        """
        message = BufferedMessage(
            content=content,
            priority=priority,
            metadata=metadata,
            originator_id=originator_id,
        )
        invocation_id = uuid.uuid4().hex
        role, state = await self._once(self._contribute, buffer_id, message, invocation_id)
        position = _position_of(state, message.id)

        if role == "slave":
            await self._audit.record_message(buffer_id, message)
            logger.info(
                "Buffer %s: message %s appended at position %d, flush due at %.3f",
                buffer_id,
                message.id,
                position,
                state.deadline,
            )
            return AddResult(
                buffer_id=buffer_id,
                message_id=message.id,
                role="slave",
                pending=True,
                position=position,
                estimated_flush_at=state.deadline,
            )

        logger.info("Buffer %s: invocation %s is master", buffer_id, invocation_id)
        return await self._run_master(buffer_id, invocation_id, message, position, state)

    async def flush(self, buffer_id: str, trigger: FlushTrigger = "manual") -> FlushResult:
        """Flush a buffer now, independent of any debounce wait."""
        result = await self._once(self._apply_flush, buffer_id, trigger, None)
        if result is None:
            return FlushResult(trigger=trigger, flush_time=time.time())
        await self._record_flush(buffer_id, result)
        return result

    async def get_buffer(self, buffer_id: str) -> BufferState | None:
        """Read-only inspection of the stored buffer state."""
        key = self._state_key(buffer_id)
        raw = await self._once(self._store.get, key)
        return decode_state_or_none(key, raw)

    async def clear_buffer(self, buffer_id: str) -> bool:
        """Delete all state for a buffer.

        A master polling this buffer sees the deletion and raises BufferVanished.
        """
        removed = await self._once(
            self._store.delete,
            self._state_key(buffer_id),
            self._audit.message_log_key(buffer_id),
            self._cancel_key(buffer_id),
        )
        logger.info("Buffer %s cleared (%d keys removed)", buffer_id, removed)
        return removed > 0

    async def cancel_buffer(self, buffer_id: str) -> None:
        """Ask any master polling this buffer to stop and drop it."""
        ttl = int(self._config.retention_seconds)
        await self._once(self._store.set, self._cancel_key(buffer_id), "1", max(1, ttl))
        logger.info("Buffer %s cancelled", buffer_id)

    async def resume_buffer(self, buffer_id: str) -> None:
        await self._once(self._store.delete, self._cancel_key(buffer_id))
        logger.info("Buffer %s resumed", buffer_id)

    async def get_stats(self) -> BufferStats:
        keys = await self._once(self._store.scan, self._state_key("*"))
        states = []
        for key in keys:
            state = decode_state_or_none(key, await self._once(self._store.get, key))
            if state is not None:
                states.append(state)

        timestamps = [m.timestamp for s in states for m in s.messages]
        total_messages = sum(len(s.messages) for s in states)
        flushes = await self._audit.count_flushes_since(time.time() - STATS_WINDOW_SECONDS)
        return BufferStats(
            total_buffers=len(states),
            total_messages=total_messages,
            average_buffer_size=total_messages / len(states) if states else 0.0,
            oldest_message=min(timestamps, default=0.0),
            newest_message=max(timestamps, default=0.0),
            flushes_last_24h=flushes,
        )

    async def close(self) -> None:
        await self._store.close()

    # --- Election ---

    async def _contribute(
        self, buffer_id: str, message: BufferedMessage, invocation_id: str
    ) -> tuple[str, BufferState]:
        """Create the buffer as master, or append to it as slave."""
        cfg = self._config
        key = self._state_key(buffer_id)
        now = time.time()

        fresh = self._fresh_state(buffer_id, invocation_id, now)
        fresh.append(message, now + cfg.debounce_window_seconds)
        if await self._store.set_if_absent(key, encode_state(fresh), fresh.ttl(now, cfg.retention_seconds)):
            return "master", fresh

        outcome: dict[str, Any] = {}

        def append(current: str | None) -> tuple[str, int]:
            now = time.time()
            state = decode_state_or_none(key, current)
            if state is None:
                # Vanished after our create attempt, or unreadable: start over
                state = self._fresh_state(buffer_id, invocation_id, now)
                role = "master"
            elif state.leader_alive(now, cfg.leader_lease_seconds):
                role = "slave"
            else:
                # Remainder of a partial flush or an abandoned master
                state.leader_id = invocation_id
                state.leader_heartbeat = now
                role = "master"
            state.append(message, now + cfg.debounce_window_seconds)
            outcome["role"] = role
            outcome["state"] = state
            return encode_state(state), state.ttl(now, cfg.retention_seconds)

        await self._store.update(key, append)
        return outcome["role"], outcome["state"]

    # --- Master ---

    async def _run_master(
        self,
        buffer_id: str,
        invocation_id: str,
        message: BufferedMessage,
        position: int,
        state: BufferState,
    ) -> AddResult:
        key = self._state_key(buffer_id)
        message_id = message.id
        # From here on this invocation owns the buffer; an abort must release it
        try:
            await self._audit.record_message(buffer_id, message)
            trigger, state = await self._poll(buffer_id, invocation_id, state)
            if trigger == "cancelled":
                await self._retrying(self._store.delete, key)
                logger.info("Buffer %s: master %s cancelled, buffer dropped", buffer_id, invocation_id)
                return AddResult(
                    buffer_id=buffer_id,
                    message_id=message_id,
                    role="master",
                    position=position,
                    estimated_flush_at=state.deadline,
                    cancelled=True,
                )
            if trigger == "superseded":
                return AddResult(
                    buffer_id=buffer_id,
                    message_id=message_id,
                    role="slave",
                    pending=True,
                    position=position,
                    estimated_flush_at=state.deadline,
                )
            unconfirmed: dict[str, Any] = {}
            result = await self._retrying(
                self._apply_flush, buffer_id, trigger, invocation_id, unconfirmed
            )
        except asyncio.CancelledError:
            logger.warning("Buffer %s: master %s aborted, deleting state", buffer_id, invocation_id)
            await asyncio.shield(self._store.delete(key))
            raise

        if result is None:
            raise BufferVanished(buffer_id)
        await self._record_flush(buffer_id, result)
        return AddResult(
            buffer_id=buffer_id,
            message_id=message_id,
            role="master",
            position=position,
            estimated_flush_at=state.deadline,
            flush_result=result,
        )

    async def _poll(
        self, buffer_id: str, invocation_id: str, state: BufferState
    ) -> tuple[str, BufferState]:
        """Wait until the deadline passes. Returns the flush trigger and last state seen."""
        cfg = self._config
        cancel_key = self._cancel_key(buffer_id)
        while True:
            if await self._retrying(self._store.get, cancel_key) is not None:
                return "cancelled", state
            if cfg.flush_on_threshold:
                trigger = threshold_trigger(
                    state.messages, state.pattern, state.max_size, state.priority_levels
                )
                if trigger is not None:
                    return trigger, state
            remaining = state.deadline - time.time()
            if remaining <= 0:
                return "time", state
            await asyncio.sleep(min(remaining, cfg.poll_interval_seconds))

            state, superseded = await self._retrying(self._heartbeat, buffer_id, invocation_id)
            if superseded:
                logger.warning(
                    "Buffer %s: master %s superseded by %s",
                    buffer_id,
                    invocation_id,
                    state.leader_id,
                )
                return "superseded", state
            logger.debug(
                "Buffer %s: %d messages, %.3fs until flush",
                buffer_id,
                len(state.messages),
                state.deadline - time.time(),
            )

    async def _heartbeat(self, buffer_id: str, invocation_id: str) -> tuple[BufferState, bool]:
        """Re-read the state and renew this master's lease on it."""
        cfg = self._config
        key = self._state_key(buffer_id)
        outcome: dict[str, Any] = {}

        def renew(current: str | None) -> tuple[str, int]:
            now = time.time()
            state = decode_state_or_none(key, current)
            if state is None:
                raise BufferVanished(buffer_id)
            superseded = (
                state.leader_id != invocation_id
                and state.leader_alive(now, cfg.leader_lease_seconds)
            )
            if not superseded:
                state.leader_id = invocation_id
                state.leader_heartbeat = now
            outcome["state"] = state
            outcome["superseded"] = superseded
            return encode_state(state), state.ttl(now, cfg.retention_seconds)

        await self._store.update(key, renew)
        return outcome["state"], outcome["superseded"]

    # --- Flushing ---

    async def _apply_flush(
        self,
        buffer_id: str,
        trigger: FlushTrigger,
        invocation_id: str | None,
        unconfirmed: dict[str, Any] | None = None,
    ) -> FlushResult | None:
        """Atomically split the stored messages and keep only the remainder.

        ``unconfirmed`` carries the selection of a master's earlier attempt
        whose write may have committed before its reply was lost. If the
        buffer is gone or carries that master's flush marker, the earlier
        selection is returned instead of draining a second time.

        Returns None if there is no buffer to flush.
        """
        cfg = self._config
        key = self._state_key(buffer_id)
        started = time.time()
        outcome: dict[str, Any] = {}
        earlier = (unconfirmed or {}).get("selection")

        def drain(current: str | None) -> tuple[str, int] | None:
            outcome.clear()
            now = time.time()
            state = decode_state_or_none(key, current)
            if earlier is not None and (state is None or state.last_flush_id == invocation_id):
                outcome["selection"] = earlier
                outcome["replayed"] = True
                if state is None:
                    return None
                return current, state.ttl(now, cfg.retention_seconds)
            if state is None:
                return None
            selection = select_flush(
                state.messages, state.pattern, state.max_size, state.priority_levels
            )
            outcome["selection"] = selection
            state.replace_messages(selection.retained)
            state.last_flush_at = now
            if invocation_id is not None:
                state.last_flush_id = invocation_id
                if state.leader_id == invocation_id:
                    state.leader_id = None
                    state.leader_heartbeat = None
            if not state.messages and not state.leader_alive(now, cfg.leader_lease_seconds):
                return None
            state.deadline = max(state.deadline, now)
            return encode_state(state), state.ttl(now, cfg.retention_seconds)

        try:
            await self._store.update(key, drain)
        except Exception:
            if unconfirmed is not None and "selection" in outcome:
                unconfirmed["selection"] = outcome["selection"]
            raise
        if "selection" not in outcome:
            return None
        if outcome.get("replayed"):
            logger.warning("Buffer %s: earlier flush attempt had committed, reusing it", buffer_id)

        selection = outcome["selection"]
        result = FlushResult(
            flushed_messages=selection.flushed,
            remaining_messages=selection.retained,
            trigger=trigger,
            flush_time=started,
            processing_time=time.time() - started,
        )
        logger.info(
            "Buffer %s flushed (%s): %d sent, %d retained",
            buffer_id,
            trigger,
            len(selection.flushed),
            len(selection.retained),
        )
        return result

    async def _record_flush(self, buffer_id: str, result: FlushResult) -> None:
        if result.flushed_messages:
            await self._audit.record_flush(buffer_id, result)


def _position_of(state: BufferState, message_id: str) -> int:
    for index, message in enumerate(state.messages):
        if message.id == message_id:
            return index + 1
    return len(state.messages)
