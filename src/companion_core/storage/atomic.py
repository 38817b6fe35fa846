"""Whole-document JSON persistence with temp-file-then-rename writes."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from ..errors import StorageCorrupt, StorageIOError

log = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def tmp_path_for(path: Path) -> Path:
    return path.with_name(path.name + TMP_SUFFIX)


def read_json(path: Path, default: Any) -> Any:
    """Parse the JSON document at *path*, or return *default* if it is missing."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        raise StorageIOError(f"cannot read {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StorageCorrupt(f"{path} is not valid JSON: {exc}") from exc


def write_json(path: Path, document: Any) -> None:
    """Replace the document at *path*.

    The new content goes to a sibling ``.tmp`` file first; ``os.replace``
    is the only step that touches *path*.
    """
    tmp = tmp_path_for(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise StorageIOError(f"cannot write {path}: {exc}") from exc


class AtomicStore:
    """Async front for one JSON document file.

    File I/O runs in a worker thread. Writes to the file are serialised
    so only one ``.tmp`` sibling is ever in use. Read-modify-write cycles
    are not; callers hold a lock around those.

    Usage:
        store = AtomicStore(paths.chat_history)
        doc = await store.read({})
        await store.write(doc)
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._write_lock = asyncio.Lock()

    async def read(self, default: Any = None) -> Any:
        return await asyncio.to_thread(read_json, self.path, default)

    async def write(self, document: Any) -> None:
        async with self._write_lock:
            await asyncio.to_thread(write_json, self.path, document)
        log.debug("wrote %s", self.path)
