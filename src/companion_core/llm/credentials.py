"""Pool of API credentials with least-used selection and quarantine."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

log = logging.getLogger(__name__)

RATE_LIMIT_COOLDOWN = 60.0
QUARANTINE_WINDOW = 300.0
SWEEP_INTERVAL = 60.0


class FailureKind(str, Enum):
    AUTH = "auth"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    OTHER = "other"


# Failures that clear themselves once the provider's window rolls over.
_COOLDOWN_KINDS = {FailureKind.QUOTA, FailureKind.RATE_LIMIT}


@dataclass
class CredentialState:
    secret: str
    usage: int = 0
    quarantined: bool = False
    quarantined_at: float | None = None
    restore_at: float | None = None
    last_used: float | None = None

    def clear_quarantine(self) -> None:
        self.quarantined = False
        self.quarantined_at = None
        self.restore_at = None


class CredentialPool:
    """Process-local state for a fixed list of credentials.

    Times come from *clock* (monotonic seconds) so cooldowns can be
    driven by tests.

    Usage:
        pool = CredentialPool(["key-a", "key-b"])
        index = pool.select()
        pool.record_usage(index)
        pool.mark_failed(index, FailureKind.RATE_LIMIT)
    """

    def __init__(
        self,
        secrets: list[str],
        cooldown: float = RATE_LIMIT_COOLDOWN,
        quarantine_window: float = QUARANTINE_WINDOW,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not secrets:
            raise ValueError("credential pool needs at least one credential")
        self._states = [CredentialState(secret=s) for s in secrets]
        self.cooldown = cooldown
        self.quarantine_window = quarantine_window
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._running = False
        log.info("%d credentials ready", len(self._states))

    def __len__(self) -> int:
        return len(self._states)

    def secret(self, index: int) -> str:
        return self._states[index].secret

    def state(self, index: int) -> CredentialState:
        return self._states[index]

    def is_quarantined(self, index: int) -> bool:
        self._restore_cooled_down()
        return self._states[index].quarantined

    # ── Selection ───────────────────────────────────────────────────

    def select(self) -> int:
        """Index of the least-used available credential.

        When every credential is quarantined the quarantine is lifted for
        all of them, so selection never stalls.
        """
        self._restore_cooled_down()
        available = [i for i, s in enumerate(self._states) if not s.quarantined]
        if not available:
            log.warning("all %d credentials quarantined, resetting", len(self._states))
            for state in self._states:
                state.clear_quarantine()
            available = list(range(len(self._states)))
        return min(available, key=lambda i: self._states[i].usage)

    def record_usage(self, index: int) -> None:
        state = self._states[index]
        state.usage += 1
        state.last_used = self._clock()

    def mark_failed(self, index: int, kind: FailureKind = FailureKind.OTHER) -> None:
        """Quarantine a credential. Quota and rate-limit failures restore after the cooldown."""
        now = self._clock()
        state = self._states[index]
        state.quarantined = True
        state.quarantined_at = now
        state.last_used = now
        state.restore_at = now + self.cooldown if kind in _COOLDOWN_KINDS else None
        log.warning("credential %d quarantined (%s)", index + 1, kind.value)

    def _restore_cooled_down(self) -> None:
        now = self._clock()
        for index, state in enumerate(self._states):
            if state.quarantined and state.restore_at is not None and now >= state.restore_at:
                state.clear_quarantine()
                log.info("credential %d restored after cooldown", index + 1)

    def sweep(self) -> int:
        """Lift quarantines older than the quarantine window. Returns how many."""
        self._restore_cooled_down()
        now = self._clock()
        restored = 0
        for index, state in enumerate(self._states):
            if (
                state.quarantined
                and state.quarantined_at is not None
                and now - state.quarantined_at >= self.quarantine_window
            ):
                state.clear_quarantine()
                restored += 1
                log.info("credential %d released from quarantine", index + 1)
        return restored

    # ── Background sweep ────────────────────────────────────────────

    async def run(self) -> None:
        """Sweep periodically. Run this as a background task."""
        self._running = True
        try:
            while self._running:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
        except asyncio.CancelledError:
            self._running = False

    def stop(self) -> None:
        self._running = False

    # ── Status ──────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        self._restore_cooled_down()
        quarantined = sum(1 for s in self._states if s.quarantined)
        available = len(self._states) - quarantined
        return {
            "totalKeys": len(self._states),
            "availableKeys": available,
            "failedKeys": quarantined,
            "keyStats": {
                f"key_{i + 1}": {
                    "usage": s.usage,
                    "failed": s.quarantined,
                    "lastUsed": s.last_used,
                }
                for i, s in enumerate(self._states)
            },
            "healthStatus": "healthy" if available > 0 else "degraded",
        }
