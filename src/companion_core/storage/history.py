"""Per-sender chat history stored in one JSON document."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from .atomic import AtomicStore
from .documents import (
    Clock,
    KeyedDocumentRepository,
    LockScope,
    isoformat,
    parse_timestamp,
    utc_now,
)
from .locks import LockManager

log = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 30
DEFAULT_TIMEZONE = "Asia/Colombo"

DUPLICATE_WINDOW = timedelta(seconds=5)
DUPLICATE_LOOKBACK = 5
MAX_EMOTIONAL_CONTEXTS = 10

SYSTEM_ACK = "I understand. I'm ready to chat with you!"

ROLES = ("user", "assistant")


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def format_local(dt: datetime) -> str:
    """Render like ``10/18/2026, 3:05:09 PM``."""
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return (
        f"{dt.month}/{dt.day}/{dt.year}, "
        f"{hour}:{dt.minute:02d}:{dt.second:02d} {suffix}"
    )


def format_clock(dt: datetime) -> str:
    """Render like ``03:05 PM``."""
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{hour:02d}:{dt.minute:02d} {suffix}"


def is_message(entry: dict[str, Any]) -> bool:
    return "type" not in entry and entry.get("role") in ROLES


class ChatHistory(KeyedDocumentRepository):
    """Sender key -> list of entries, oldest first.

    Besides chat messages the list carries typed records (``contact``,
    ``emotional_context``) that share the sender's bucket.
    """

    def __init__(
        self,
        store: AtomicStore,
        locks: LockManager | None = None,
        lock_scope: LockScope | str = LockScope.DOCUMENT,
        clock: Clock = utc_now,
        max_history: int = DEFAULT_MAX_HISTORY,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        super().__init__(store, locks, lock_scope, clock)
        self.max_history = max_history
        self.tz = ZoneInfo(timezone)

    def default_entity(self) -> list[dict[str, Any]]:
        return []

    def _is_duplicate(
        self, entries: list[dict[str, Any]], role: str, content: str, now: datetime,
    ) -> bool:
        for entry in entries[-DUPLICATE_LOOKBACK:]:
            if entry.get("role") != role or entry.get("content") != content:
                continue
            stamped = parse_timestamp(entry.get("timestamp"))
            if stamped is not None and now - stamped < DUPLICATE_WINDOW:
                return True
        return False

    # ── Messages ────────────────────────────────────────────────────

    async def add_message(
        self,
        key: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        force_duplicate: bool = False,
    ) -> dict[str, Any] | None:
        """Append a message. Returns None when it repeats a recent one.

        A message with the same role and content among the last five
        entries, stamped less than five seconds ago, is treated as a
        redelivery of the same event and not stored.
        """
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        async with self.locked(key):
            document = await self.read_document()
            entries = document.get(key)
            if not isinstance(entries, list):
                entries = []
            now = self.clock()
            if not force_duplicate and self._is_duplicate(entries, role, content, now):
                log.debug("duplicate %s message for %s ignored", role, key)
                return None
            local = now.astimezone(self.tz)
            message = {
                **(metadata or {}),
                "id": uuid.uuid4().hex,
                "role": role,
                "content": content,
                "timestamp": isoformat(now),
                "localTime": format_local(local),
                "timeOfDay": time_of_day(local.hour),
            }
            entries.append(message)
            document[key] = entries[-self.max_history:]
            await self.write_document(document)
        log.debug("message added for %s: %s", key, role)
        return message

    async def get_messages(self, key: str) -> list[dict[str, Any]]:
        return await self.get_entity(key)

    async def clear_messages(self, key: str) -> bool:
        return await self.delete_entity(key)

    async def get_conversation_context(
        self, key: str, system_prompt: str | None = None,
    ) -> list[dict[str, Any]]:
        """Stored messages as generation turns, optionally behind a system pair."""
        turns: list[dict[str, Any]] = []
        if system_prompt:
            turns.append({"role": "user", "parts": [{"text": system_prompt}]})
            turns.append({"role": "model", "parts": [{"text": SYSTEM_ACK}]})
        for entry in await self.get_messages(key):
            if not is_message(entry):
                continue
            role = "user" if entry["role"] == "user" else "model"
            turns.append({"role": role, "parts": [{"text": entry.get("content", "")}]})
        return turns

    # ── Contacts ────────────────────────────────────────────────────

    async def store_contact(
        self,
        key: str,
        contact_name: str,
        contact_number: str,
        relationship: str = "friend",
    ) -> dict[str, Any]:
        """Add a contact, replacing one with the same (case-insensitive) name."""
        contact = {
            "id": uuid.uuid4().hex,
            "type": "contact",
            "contactName": contact_name,
            "contactNumber": contact_number,
            "relationship": relationship,
            "timestamp": self.now_iso(),
            "addedBy": "user",
        }
        wanted = contact_name.lower()

        def apply(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
            for i, entry in enumerate(entries):
                name = entry.get("contactName") or ""
                if entry.get("type") == "contact" and name.lower() == wanted:
                    entries[i] = contact
                    return entries
            entries.append(contact)
            return entries

        await self.mutate(key, apply)
        log.debug("contact stored for %s: %s", key, contact_name)
        return contact

    async def get_contacts(self, key: str) -> list[dict[str, Any]]:
        return [e for e in await self.get_messages(key) if e.get("type") == "contact"]

    async def find_contact(self, key: str, contact_name: str) -> dict[str, Any] | None:
        """Exact name match first, then substring match either way."""
        contacts = await self.get_contacts(key)
        wanted = contact_name.lower()
        for contact in contacts:
            if (contact.get("contactName") or "").lower() == wanted:
                return contact
        for contact in contacts:
            name = (contact.get("contactName") or "").lower()
            if name and (wanted in name or name in wanted):
                return contact
        return None

    # ── Emotional context ───────────────────────────────────────────

    async def store_emotional_context(self, key: str, context: Any) -> dict[str, Any]:
        """Record an emotional note, keeping only the newest ten of them."""
        record = {
            "id": uuid.uuid4().hex,
            "type": "emotional_context",
            "context": context,
            "timestamp": self.now_iso(),
        }

        def apply(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
            entries.append(record)
            emotional = [e for e in entries if e.get("type") == "emotional_context"]
            excess = len(emotional) - MAX_EMOTIONAL_CONTEXTS
            if excess > 0:
                dropped = {id(e) for e in emotional[:excess]}
                entries = [e for e in entries if id(e) not in dropped]
            return entries

        await self.mutate(key, apply)
        return record

    # ── Derived views ───────────────────────────────────────────────

    async def get_time_context(self, key: str) -> dict[str, Any]:
        """Local-time facts about the conversation with *key*."""
        messages = [e for e in await self.get_messages(key) if is_message(e)]
        now = self.clock()
        local = now.astimezone(self.tz)
        hour = local.hour

        minutes_since = None
        last_time_of_day = None
        if messages and messages[-1]["role"] == "user":
            stamped = parse_timestamp(messages[-1].get("timestamp"))
            if stamped is not None:
                minutes_since = int((now - stamped).total_seconds() // 60)
            last_time_of_day = messages[-1].get("timeOfDay")

        return {
            "currentTime": format_clock(local),
            "currentTimeOfDay": time_of_day(hour),
            "currentHour": hour,
            "timeSinceLastMessage": minutes_since,
            "lastMessageTimeOfDay": last_time_of_day,
            "timePattern": [
                {
                    "timeOfDay": m.get("timeOfDay"),
                    "timestamp": m.get("timestamp"),
                    "role": m["role"],
                }
                for m in messages[-10:]
            ],
            "isLateNight": hour >= 23 or hour <= 5,
            "isMealTime": 7 <= hour <= 9 or 12 <= hour <= 14 or 18 <= hour <= 20,
            "isStudyTime": 19 <= hour <= 22,
            "isSleepTime": hour >= 22 or hour <= 6,
        }

    async def stats(self) -> dict[str, int]:
        document = await self.read_document()
        senders = len(document)
        total = sum(len(v) for v in document.values() if isinstance(v, list))
        return {
            "totalSenders": senders,
            "totalMessages": total,
            "averageMessagesPerSender": round(total / senders) if senders else 0,
        }
