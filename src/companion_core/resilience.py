"""Explicit fall-back-to-default wrapper for best-effort operations."""

from __future__ import annotations

import logging
from typing import Awaitable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


async def or_default(
    op: Awaitable[T],
    fallback: T,
    *,
    label: str = "operation",
    errors: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Await *op*; if it raises one of *errors*, log it and return *fallback*."""
    try:
        return await op
    except errors as exc:
        log.warning("%s failed, using default: %s", label, exc)
        return fallback
