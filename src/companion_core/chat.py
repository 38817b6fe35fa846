"""Application layer: turn inbound messages into stored, generated replies."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .errors import GenerationError, StorageError
from .llm.queue import PRIORITY_PROACTIVE, PRIORITY_REPLY, GenerationQueue
from .memory import MemoryCurator
from .resilience import or_default
from .storage.history import ChatHistory
from .storage.profiles import ProfileMemory
from .storage.settings import Settings

log = logging.getLogger(__name__)

SKIP = "SKIP"

PROACTIVE_INSTRUCTION = (
    "Based on our conversation and what you remember about me, send me a short, "
    "natural message to start a chat. If there is nothing meaningful to say, "
    f"answer with {SKIP}."
)


@dataclass
class InboundMessage:
    """One message event delivered by a transport."""

    key: str
    text: str
    timestamp: str | None = None
    sender_name: str | None = None
    message_id: str | None = None
    quoted_message: str | None = None
    quoted_from_bot: bool = False

    def metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = {"hasQuote": self.quoted_message is not None}
        if self.sender_name:
            meta["senderName"] = self.sender_name
        if self.message_id:
            meta["messageId"] = self.message_id
        if self.quoted_message is not None:
            meta["quotedMessage"] = self.quoted_message
        if self.timestamp:
            meta["receivedAt"] = self.timestamp
        return meta


def format_reply_context(event: InboundMessage, bot_name: str) -> str:
    if event.quoted_message is None:
        return event.text
    who = bot_name if event.quoted_from_bot else "User"
    return (
        f'[REPLYING TO {who.upper()}: "{event.quoted_message}"]\n\n'
        f"User's reply: {event.text}"
    )


def format_time_context(ctx: dict[str, Any]) -> str:
    lines = [
        "=== REAL-TIME CONTEXT ===",
        f"Current time: {ctx['currentTime']} ({ctx['currentTimeOfDay']})",
    ]
    if ctx.get("timeSinceLastMessage") is not None:
        lines.append(f"Time since last message: {ctx['timeSinceLastMessage']} minutes ago")
    return "\n".join(lines)


class ChatService:
    """Glue between a transport, the two stores and the generation queue.

    Storage and generation failures are absorbed here: the user gets the
    configured fallback reply instead of an error.
    """

    def __init__(
        self,
        history: ChatHistory,
        profiles: ProfileMemory,
        queue: GenerationQueue,
        settings: Settings,
        curator: MemoryCurator | None = None,
    ) -> None:
        self.history = history
        self.profiles = profiles
        self.queue = queue
        self.settings = settings
        self.curator = curator or MemoryCurator(profiles, queue)
        self._in_flight: set[str] = set()
        self._background: set[asyncio.Task] = set()

    async def _system_prompt(self, key: str) -> str:
        summary = await or_default(
            self.profiles.memory_summary(key), "", label=f"memory summary for {key}",
        )
        time_ctx = await or_default(
            self.history.get_time_context(key), None, label=f"time context for {key}",
        )
        parts = [self.settings.get("system_prompt") or "", summary]
        if time_ctx:
            parts.append(format_time_context(time_ctx))
        return "\n\n".join(p for p in parts if p)

    async def handle_message(self, event: InboundMessage) -> str | None:
        """Record *event*, generate a reply, record and return it.

        Memory updates for the sender run in the background.

        Returns None for a redelivered event that is already being handled
        or was stored a moment ago.
        """
        flight_key = f"{event.key}-{event.message_id}" if event.message_id else None
        if flight_key is not None:
            if flight_key in self._in_flight:
                log.debug("message %s already in flight", flight_key)
                return None
            self._in_flight.add(flight_key)
        try:
            return await self._reply(event)
        finally:
            if flight_key is not None:
                self._in_flight.discard(flight_key)

    async def _reply(self, event: InboundMessage) -> str | None:
        bot_name = self.settings.get("bot_name")
        text = format_reply_context(event, bot_name)
        stored = await or_default(
            self.history.add_message(event.key, "user", text, event.metadata()),
            {},
            label=f"storing message from {event.key}",
            errors=(StorageError,),
        )
        if stored is None:
            return None
        self._remember(event.key, event.text)

        turns = await or_default(
            self.history.get_conversation_context(event.key),
            [],
            label=f"history for {event.key}",
            errors=(StorageError,),
        )
        if not turns or turns[-1]["parts"][0]["text"] != text:
            turns.append({"role": "user", "parts": [{"text": text}]})

        system = await self._system_prompt(event.key)
        reply = await or_default(
            self.queue.submit(turns, priority=PRIORITY_REPLY, system=system),
            None,
            label=f"reply to {event.key}",
            errors=(GenerationError,),
        )
        if reply is None:
            return self.settings.get("fallback_reply")

        await or_default(
            self.history.add_message(event.key, "assistant", reply),
            None,
            label=f"storing reply to {event.key}",
            errors=(StorageError,),
        )
        log.info("replied to %s", event.sender_name or event.key)
        return reply

    async def proactive_message(self, key: str) -> str | None:
        """Start a conversation with *key*, or None if the model has nothing to say."""
        turns = await or_default(
            self.history.get_conversation_context(key),
            [],
            label=f"history for {key}",
            errors=(StorageError,),
        )
        turns.append({"role": "user", "parts": [{"text": PROACTIVE_INSTRUCTION}]})
        system = await self._system_prompt(key)
        text = await or_default(
            self.queue.submit(
                turns, priority=PRIORITY_PROACTIVE, max_retries=1, system=system,
            ),
            None,
            label=f"proactive message for {key}",
            errors=(GenerationError,),
        )
        if text is None or text.strip() == SKIP:
            return None
        await or_default(
            self.history.add_message(key, "assistant", text),
            None,
            label=f"storing proactive message for {key}",
            errors=(StorageError,),
        )
        return text

    # ── Background memory updates ──────────────────────────────────

    def _remember(self, key: str, text: str) -> None:
        if not self.settings.get("memory_updates"):
            return
        task = asyncio.create_task(
            or_default(self.curator.process(key, text), 0, label=f"memory update for {key}")
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def settle(self) -> None:
        """Wait for pending memory updates to finish."""
        while self._background:
            await asyncio.gather(*self._background)

    async def close(self) -> None:
        """Cancel pending memory updates."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
