"""Entry point and process-wide context for the companion core."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from dotenv import load_dotenv

from .chat import ChatService, InboundMessage
from .llm.client import GenerationClient
from .llm.credentials import CredentialPool
from .llm.queue import GenerationQueue
from .paths import Paths
from .storage.atomic import AtomicStore
from .storage.history import ChatHistory
from .storage.locks import LockManager
from .storage.profiles import ProfileMemory
from .storage.settings import API_KEYS_ENV, Settings

log = logging.getLogger(__name__)


def build_stores(
    paths: Paths, settings: Settings, locks: LockManager,
) -> tuple[ChatHistory, ProfileMemory]:
    """Open the chat-history and user-memory documents."""
    conf = settings.load()
    history = ChatHistory(
        AtomicStore(paths.chat_history),
        locks,
        lock_scope=conf["lock_scope"],
        max_history=conf["max_chat_history"],
        timezone=conf["timezone"],
    )
    profiles = ProfileMemory(
        AtomicStore(paths.user_memories),
        locks,
        lock_scope=conf["lock_scope"],
    )
    return history, profiles


class Companion:
    """Owns the stores, the lock table, the credential pool and the queue.

    Usage:
        async with Companion(paths, api_keys) as companion:
            reply = await companion.chat.handle_message(event)
    """

    def __init__(self, paths: Paths | None = None, api_keys: list[str] | None = None) -> None:
        self.paths = paths or Paths()
        self.settings = Settings(self.paths)
        self.locks = LockManager()
        self.history, self.profiles = build_stores(self.paths, self.settings, self.locks)
        keys = api_keys if api_keys is not None else Settings.api_keys()
        self.pool = CredentialPool(keys)
        self.client = GenerationClient(self.settings, self.pool)
        self.queue = GenerationQueue(self.client)
        self.chat = ChatService(self.history, self.profiles, self.queue, self.settings)
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self.queue.run()),
            asyncio.create_task(self.pool.run()),
        ]
        log.info("companion started with data in %s", self.paths.root)

    async def shutdown(self) -> None:
        await self.chat.close()
        await self.queue.close()
        self.pool.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self.locks.release_all()
        log.info("companion stopped")

    async def __aenter__(self) -> Companion:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()


# ── Commands ────────────────────────────────────────────────────────


async def _chat(args: argparse.Namespace, paths: Paths) -> None:
    keys = Settings.api_keys()
    if not keys:
        raise SystemExit(f"Missing {API_KEYS_ENV}.")
    async with Companion(paths, keys) as companion:
        event = InboundMessage(key=args.key, text=args.text, sender_name=args.name)
        reply = await companion.chat.handle_message(event)
        print(reply if reply is not None else "(duplicate message ignored)")
        await companion.chat.settle()


async def _stats(args: argparse.Namespace, paths: Paths) -> None:
    history, profiles = build_stores(paths, Settings(paths), LockManager())
    stats = {
        "history": await history.stats(),
        "memory": await profiles.stats(),
    }
    print(json.dumps(stats, indent=2))


async def _forget(args: argparse.Namespace, paths: Paths) -> None:
    history, profiles = build_stores(paths, Settings(paths), LockManager())
    cleared_history = await history.clear_messages(args.key)
    cleared_memory = await profiles.clear_memory(args.key)
    if cleared_history or cleared_memory:
        print(f"forgot {args.key}")
    else:
        print(f"nothing stored for {args.key}")


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Companion core")
    parser.add_argument(
        "--data-dir", default="data",
        help="Data directory (default: data)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Send one message and print the reply")
    chat.add_argument("key", help="Sender key")
    chat.add_argument("text", help="Message text")
    chat.add_argument("--name", default=None, help="Sender display name")
    chat.set_defaults(func=_chat)

    stats = sub.add_parser("stats", help="Show store statistics")
    stats.set_defaults(func=_stats)

    forget = sub.add_parser("forget", help="Delete history and memory for a sender")
    forget.add_argument("key", help="Sender key")
    forget.set_defaults(func=_forget)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    paths = Paths(root=args.data_dir)
    asyncio.run(args.func(args, paths))


if __name__ == "__main__":
    main()
