"""Text-generation client, credential pool and request queue."""

from .client import GenerationClient, turns_to_messages
from .credentials import CredentialPool, FailureKind
from .queue import PRIORITY_BACKGROUND, PRIORITY_PROACTIVE, PRIORITY_REPLY, GenerationQueue
from .retry import RetryPolicy, exponential_backoff

__all__ = [
    "CredentialPool",
    "FailureKind",
    "GenerationClient",
    "GenerationQueue",
    "PRIORITY_BACKGROUND",
    "PRIORITY_PROACTIVE",
    "PRIORITY_REPLY",
    "RetryPolicy",
    "exponential_backoff",
    "turns_to_messages",
]
