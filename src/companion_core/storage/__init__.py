"""Storage classes for the companion core."""

from .atomic import AtomicStore, read_json, write_json
from .documents import CategoryKind, KeyedDocumentRepository, LockScope
from .history import ChatHistory
from .locks import LockManager
from .profiles import ProfileMemory
from .settings import Settings

__all__ = [
    "AtomicStore",
    "CategoryKind",
    "ChatHistory",
    "KeyedDocumentRepository",
    "LockManager",
    "LockScope",
    "ProfileMemory",
    "Settings",
    "read_json",
    "write_json",
]
