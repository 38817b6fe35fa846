"""LLM-driven updates to user memory profiles.

After each inbound message the model is asked which facts about the
user should be stored, updated, appended or deleted. Its answer is a
list of operations that are applied to the profile document.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from .llm.queue import PRIORITY_BACKGROUND, GenerationQueue
from .storage.documents import CategoryKind
from .storage.profiles import ProfileMemory

log = logging.getLogger(__name__)

OPERATIONS = ("store", "update", "append", "delete")

DEFAULT_APPEND_FIELD = "items"

ANALYSIS_PROMPT = """\
MEMORY ANALYSIS TASK:

Decide what should be stored, updated, appended or deleted in the user's
memory profile based on their message.

USER MESSAGE: "{message}"

CURRENT MEMORY PROFILE:
{profile}

CATEGORIES: personalInfo, relationships, preferences, emotionalProfile,
academicInfo, lifeEvents, conversationContext, contacts

OPERATIONS:
- store: set data (a whole category, or one subcategory)
- update: merge data into what is already there
- append: add to a list (newest first)
- delete: remove a subcategory, or the entry named by data.key

Respond with JSON only:
{{"memory_operations": [{{"operation": "store|update|append|delete",
"category": "...", "subcategory": "optional", "data": {{}},
"reason": "why"}}]}}

Only include facts the message states or clearly implies. If there is
nothing worth remembering, respond with {{"memory_operations": []}}.
"""


def _strip_code_fences(text: str) -> str:
    text = text.strip()
    text = re.sub(r"^```(?:json)?\s*\n?", "", text)
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


@dataclass
class MemoryOperation:
    operation: str
    category: str
    data: Any
    subcategory: str | None = None
    reason: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> MemoryOperation | None:
        """Build an operation from model output, or None if it is malformed."""
        if not isinstance(raw, dict):
            return None
        op = str(raw.get("operation") or "").lower()
        category = raw.get("category")
        data = raw.get("data")
        if op not in OPERATIONS or not isinstance(category, str) or not category:
            return None
        if data is None or data == "":
            return None
        subcategory = raw.get("subcategory") or None
        if subcategory is not None and not isinstance(subcategory, str):
            return None
        return cls(op, category, data, subcategory, str(raw.get("reason") or ""))


def parse_memory_operations(text: str) -> list[MemoryOperation]:
    """Pull the operation list out of a model response. Bad input yields []."""
    cleaned = _strip_code_fences(text)
    match = re.search(r"\{.*\}", cleaned, re.DOTALL)
    if match is None:
        log.debug("memory analysis returned no JSON object")
        return []
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        log.warning("memory analysis returned invalid JSON: %s", cleaned[:200])
        return []
    raw_ops = data.get("memory_operations") if isinstance(data, dict) else None
    if not isinstance(raw_ops, list):
        return []
    operations = []
    for raw in raw_ops:
        op = MemoryOperation.from_dict(raw)
        if op is None:
            log.warning("skipping malformed memory operation: %r", raw)
            continue
        operations.append(op)
    return operations


class MemoryCurator:
    """Turns user messages into profile updates.

    Only one analysis runs per user at a time; a message that arrives
    while one is running is not analysed.

    Usage:
        curator = MemoryCurator(profiles, queue)
        applied = await curator.process(key, "I failed chemistry again")
    """

    def __init__(self, profiles: ProfileMemory, queue: GenerationQueue) -> None:
        self.profiles = profiles
        self.queue = queue
        self._busy: set[str] = set()

    async def analyze(self, key: str, message: str) -> list[MemoryOperation]:
        profile = await self.profiles.get_profile(key)
        prompt = ANALYSIS_PROMPT.format(
            message=message,
            profile=json.dumps(profile, indent=2, ensure_ascii=False),
        )
        raw = await self.queue.submit(
            [{"role": "user", "parts": [{"text": prompt}]}],
            priority=PRIORITY_BACKGROUND,
            max_retries=1,
        )
        return parse_memory_operations(raw)

    async def apply(self, key: str, operations: list[MemoryOperation]) -> int:
        """Apply *operations* in order. Returns how many changed the profile."""
        applied = 0
        for op in operations:
            if self.profiles.category_kind(op.category) is not CategoryKind.RECORD:
                log.warning("memory operation on unknown category %r skipped", op.category)
                continue
            log.debug(
                "%s %s%s for %s: %s", op.operation, op.category,
                f".{op.subcategory}" if op.subcategory else "", key, op.reason,
            )
            if await self._apply_one(key, op):
                applied += 1
        return applied

    async def _apply_one(self, key: str, op: MemoryOperation) -> bool:
        if op.operation == "append":
            items = op.data if isinstance(op.data, list) else [op.data]
            field = op.subcategory or DEFAULT_APPEND_FIELD
            for item in items:
                await self.profiles.add_to_memory_array(key, op.category, field, item)
            return True

        if op.operation == "delete":
            target = op.data.get("key") if isinstance(op.data, dict) else None
            if op.subcategory:
                return await self.profiles.delete_field(key, op.category, op.subcategory, target)
            if target is None:
                return False
            return await self.profiles.delete_field(key, op.category, target)

        merge = op.operation == "update"
        if op.subcategory:
            if op.category == "relationships" and isinstance(op.data, dict) and op.data.get("name"):
                details = {k: v for k, v in op.data.items() if k != "name"}
                await self.profiles.store_relationship(
                    key, op.subcategory, op.data["name"], details,
                )
            else:
                await self.profiles.set_field(
                    key, op.category, op.subcategory, op.data, merge=merge,
                )
            return True
        if not isinstance(op.data, dict):
            log.warning("%s on %s needs an object", op.operation, op.category)
            return False
        await self.profiles.update_memory(key, op.category, op.data, merge=True)
        return True

    async def process(self, key: str, message: str) -> int:
        """Analyse *message* and apply the result. Returns operations applied."""
        if key in self._busy:
            log.debug("memory analysis already running for %s", key)
            return 0
        self._busy.add(key)
        try:
            operations = await self.analyze(key, message)
            if not operations:
                return 0
            applied = await self.apply(key, operations)
            log.info("applied %d memory operations for %s", applied, key)
            return applied
        finally:
            self._busy.discard(key)
