"""Entity-keyed operations over a single JSON document.

A document maps entity keys (one per conversation participant) to that
entity's data. Every mutation is a locked read-modify-write of the whole
file through an :class:`AtomicStore`.

The lock domain is chosen with :class:`LockScope`:

* ``DOCUMENT`` takes one store-wide lock, so lock and persistence
  granularity match and concurrent writers never lose each other's
  changes.
* ``ENTITY`` locks only the entity key. Writers on two different keys
  may both read the old document and the later write drops the earlier
  one's change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, TypeVar

from ..errors import StorageCorrupt
from .atomic import AtomicStore
from .locks import LockManager

log = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    return (
        dt.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LockScope(str, Enum):
    DOCUMENT = "document"
    ENTITY = "entity"


class CategoryKind(Enum):
    """How ``update_entity`` treats a category when merging."""

    RECORD = "record"   # mapping; merged field by field
    LIST = "list"       # replaced wholesale
    SCALAR = "scalar"   # replaced wholesale


class KeyedDocumentRepository:
    """Get/update/append/delete operations on one entity-keyed document.

    Subclasses describe the entity shape by overriding
    :meth:`default_entity` and :attr:`CATEGORY_KINDS`.
    """

    CATEGORY_KINDS: Mapping[str, CategoryKind] = {}

    def __init__(
        self,
        store: AtomicStore,
        locks: LockManager | None = None,
        lock_scope: LockScope | str = LockScope.DOCUMENT,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.locks = locks or LockManager()
        self.lock_scope = LockScope(lock_scope)
        self.clock = clock

    # ── Schema hooks ────────────────────────────────────────────────

    def default_entity(self) -> Any:
        """Value of an entity that has never been written."""
        return {}

    def category_kind(self, category: str) -> CategoryKind:
        return self.CATEGORY_KINDS.get(category, CategoryKind.SCALAR)

    # ── Locking and I/O ─────────────────────────────────────────────

    def lock_key(self, key: str) -> str:
        if self.lock_scope is LockScope.ENTITY:
            return f"{self.store.path}#{key}"
        return str(self.store.path)

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        """Critical section guarding a read-modify-write of *key*."""
        async with self.locks.hold(self.lock_key(key)):
            yield

    async def read_document(self) -> dict[str, Any]:
        document = await self.store.read({})
        if not isinstance(document, dict):
            raise StorageCorrupt(
                f"{self.store.path} holds {type(document).__name__}, expected an object"
            )
        return document

    async def write_document(self, document: dict[str, Any]) -> None:
        await self.store.write(document)

    def now_iso(self) -> str:
        return isoformat(self.clock())

    def touch(self, entity: dict[str, Any]) -> None:
        """Stamp ``lastUpdated`` without ever moving it backwards."""
        now = self.now_iso()
        previous = entity.get("lastUpdated")
        if isinstance(previous, str) and previous > now:
            now = previous
        entity["lastUpdated"] = now

    # ── Operations ──────────────────────────────────────────────────

    async def get_entity(self, key: str) -> Any:
        """Return the stored entity, or the schema default if absent."""
        async with self.locked(key):
            document = await self.read_document()
        if key in document:
            return document[key]
        return self.default_entity()

    async def mutate(self, key: str, fn: Callable[[Any], T]) -> T:
        """Replace the entity with ``fn(entity)`` inside the critical section.

        *fn* receives the current entity (or the default) and returns the
        new value, which is written back and returned.
        """
        async with self.locked(key):
            document = await self.read_document()
            current = document.get(key)
            if current is None:
                current = self.default_entity()
            updated = fn(current)
            document[key] = updated
            await self.write_document(document)
        return updated

    async def update_entity(
        self,
        key: str,
        category: str,
        data: Any,
        merge: bool = True,
    ) -> dict[str, Any]:
        """Set one category of an entity, merging record categories if asked."""
        kind = self.category_kind(category)

        def apply(entity: dict[str, Any]) -> dict[str, Any]:
            current = entity.get(category)
            if (
                merge
                and kind is CategoryKind.RECORD
                and isinstance(current, dict)
                and isinstance(data, Mapping)
            ):
                entity[category] = {**current, **data}
            else:
                entity[category] = data
            self.touch(entity)
            return entity

        result = await self.mutate(key, apply)
        log.debug("updated %s.%s", key, category)
        return result

    async def append_to_array(
        self,
        key: str,
        category: str,
        subcategory: str,
        item: Any,
        max_items: int = 20,
    ) -> dict[str, Any]:
        """Push *item* onto the front of ``entity[category][subcategory]``.

        Non-mapping items are wrapped as ``{"content": item}``. The list is
        cut to *max_items*, dropping the oldest entries from the tail.
        """
        now = self.now_iso()
        if isinstance(item, Mapping):
            stamped = {**item, "timestamp": now}
        else:
            stamped = {"content": item, "timestamp": now}

        def apply(entity: dict[str, Any]) -> dict[str, Any]:
            container = entity.get(category)
            if not isinstance(container, dict):
                container = entity[category] = {}
            existing = container.get(subcategory)
            if not isinstance(existing, list):
                existing = []
            container[subcategory] = [stamped, *existing][:max_items]
            self.touch(entity)
            return entity

        result = await self.mutate(key, apply)
        log.debug("appended to %s.%s.%s", key, category, subcategory)
        return result

    async def delete_entity(self, key: str) -> bool:
        """Remove *key* from the document. Returns True if it existed."""
        async with self.locked(key):
            document = await self.read_document()
            if key not in document:
                return False
            del document[key]
            await self.write_document(document)
        log.info("deleted entity %s from %s", key, self.store.path.name)
        return True

    async def keys(self) -> list[str]:
        """Entity keys currently stored."""
        document = await self.read_document()
        return list(document)
