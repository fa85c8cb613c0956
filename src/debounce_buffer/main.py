"""Command-line entry point — runs one buffer operation per invocation."""

import argparse
import asyncio
import json
import logging
import sys

from debounce_buffer.config import Settings, get_settings
from debounce_buffer.coordinator import DebounceCoordinator
from debounce_buffer.errors import DebounceError
from debounce_buffer.store import BufferStore, RedisStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="debounce-buffer",
        description="Debounce bursts of messages through a shared Redis store.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Add a message; blocks until flush if this call is master")
    add.add_argument("buffer_id")
    add.add_argument("content")
    add.add_argument("--priority", type=int, default=0)
    add.add_argument("--metadata", type=json.loads, default=None, help="JSON object")
    add.add_argument("--originator", default=None)

    flush = sub.add_parser("flush", help="Flush a buffer now")
    flush.add_argument("buffer_id")
    flush.add_argument(
        "--trigger", choices=["time", "size", "manual", "priority"], default="manual"
    )

    for name, help_text in (
        ("get", "Show buffer state"),
        ("clear", "Delete all buffer state"),
        ("cancel", "Ask the polling master to drop the buffer"),
        ("resume", "Clear a cancellation flag"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("buffer_id")

    sub.add_parser("stats", help="Aggregate statistics over all buffers")
    return parser


async def run(args: argparse.Namespace, settings: Settings, store: BufferStore) -> dict | None:
    coordinator = DebounceCoordinator(store, settings.buffer_config())
    try:
        if args.command == "add":
            result = await coordinator.add_message(
                args.buffer_id,
                args.content,
                priority=args.priority,
                metadata=args.metadata,
                originator_id=args.originator,
            )
            return result.model_dump()
        if args.command == "flush":
            return (await coordinator.flush(args.buffer_id, args.trigger)).model_dump()
        if args.command == "get":
            state = await coordinator.get_buffer(args.buffer_id)
            return state.model_dump() if state is not None else None
        if args.command == "clear":
            return {"cleared": await coordinator.clear_buffer(args.buffer_id)}
        if args.command == "cancel":
            await coordinator.cancel_buffer(args.buffer_id)
            return {"cancelled": True}
        if args.command == "resume":
            await coordinator.resume_buffer(args.buffer_id)
            return {"resumed": True}
        if args.command == "stats":
            return (await coordinator.get_stats()).model_dump()
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await coordinator.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )

    store = RedisStore.from_url(settings.redis_url)
    try:
        output = asyncio.run(run(args, settings, store))
    except DebounceError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    print(json.dumps(output, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
