"""Exception taxonomy for storage and generation failures."""

from __future__ import annotations


# ── Storage ─────────────────────────────────────────────────────────


class StorageError(Exception):
    """Base class for document store failures."""


class StorageIOError(StorageError):
    """A filesystem operation failed for a reason other than a missing file."""


class StorageCorrupt(StorageError):
    """A document exists but is not valid JSON."""


# ── Generation ──────────────────────────────────────────────────────


class GenerationError(Exception):
    """Base class for text-generation failures."""


class CredentialError(GenerationError):
    """A failure attributed to the credential used for the call.

    Credential errors quarantine the credential before the call is retried.
    """


class CredentialAuthError(CredentialError):
    pass


class CredentialQuotaError(CredentialError):
    pass


class CredentialRateLimited(CredentialError):
    pass


class GenerationTransientError(GenerationError):
    """Network or server hiccup; retried without quarantine."""


class GenerationEmptyResponse(GenerationError):
    """The backend answered with no usable text."""


class GenerationExhausted(GenerationError):
    """Every attempt failed. Carries the last observed error."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"generation failed after {attempts} attempts{detail}")


class GenerationQueueClosed(GenerationError):
    """The generation queue shut down before the request was answered."""
