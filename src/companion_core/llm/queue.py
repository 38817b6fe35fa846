"""Priority queue for generation requests with configurable concurrency."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field

from ..errors import GenerationQueueClosed
from .client import GenerationClient, Turn

log = logging.getLogger(__name__)

# Lower runs first
PRIORITY_REPLY = 0
PRIORITY_PROACTIVE = 1
PRIORITY_BACKGROUND = 2


@dataclass(order=True)
class _Request:
    priority: int
    seq: int
    turns: list[Turn] = field(compare=False)
    max_retries: int | None = field(compare=False)
    system: str | None = field(compare=False)
    future: asyncio.Future = field(compare=False)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)

    def answer(self, text: str) -> None:
        if not self.future.done():
            self.future.set_result(text)


class GenerationQueue:
    """Async priority queue in front of a GenerationClient.

    A request leaves the queue only when a concurrency slot is free, so a
    reply that arrives while proactive work is waiting still goes first.
    ``close()`` fails every request that has not been answered.

    Usage:
        queue = GenerationQueue(client, max_concurrent=2)
        runner = asyncio.create_task(queue.run())
        text = await queue.submit(turns, priority=PRIORITY_REPLY)
        await queue.close()
    """

    def __init__(self, client: GenerationClient, max_concurrent: int = 2) -> None:
        self._client = client
        self._waiting: asyncio.PriorityQueue[_Request] = asyncio.PriorityQueue()
        self._slots = asyncio.Semaphore(max_concurrent)
        self._counter = itertools.count()
        self._in_flight: dict[asyncio.Task, _Request] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(
        self,
        turns: list[Turn],
        priority: int = PRIORITY_REPLY,
        max_retries: int | None = None,
        system: str | None = None,
    ) -> str:
        """Wait for the generated text. Raises GenerationQueueClosed after close()."""
        if self._closed:
            raise GenerationQueueClosed("generation queue is closed")
        request = _Request(
            priority=priority,
            seq=next(self._counter),
            turns=turns,
            max_retries=max_retries,
            system=system,
            future=asyncio.get_running_loop().create_future(),
        )
        self._waiting.put_nowait(request)
        return await request.future

    async def run(self) -> None:
        """Dispatch requests as slots free up. Run this as a background task."""
        while not self._closed:
            await self._slots.acquire()
            try:
                request = await self._waiting.get()
            except BaseException:
                self._slots.release()
                raise
            if request.future.done():
                # submitter gave up while waiting
                self._slots.release()
                continue
            task = asyncio.create_task(self._serve(request))
            self._in_flight[task] = request
            task.add_done_callback(self._forget)

    async def _serve(self, request: _Request) -> None:
        try:
            text = await self._client.generate(
                turns=request.turns,
                max_retries=request.max_retries,
                system=request.system,
            )
        except Exception as exc:
            request.fail(exc)
        else:
            request.answer(text)
        finally:
            self._slots.release()

    def _forget(self, task: asyncio.Task) -> None:
        self._in_flight.pop(task, None)

    async def close(self) -> None:
        """Stop taking work and fail everything still queued or running."""
        self._closed = True
        dropped = 0
        while not self._waiting.empty():
            self._waiting.get_nowait().fail(GenerationQueueClosed("generation queue closed"))
            dropped += 1
        running = dict(self._in_flight)
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for request in running.values():
            request.fail(GenerationQueueClosed("generation queue closed mid-request"))
        if dropped or running:
            log.info("generation queue closed: %d queued, %d running", dropped, len(running))
