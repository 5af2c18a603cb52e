from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Hashable

logger = logging.getLogger("companion_core.background")

JobFactory = Callable[[], Awaitable[object]]


@dataclass(slots=True)
class PendingJob:
    label: str
    factory: JobFactory
    key: Hashable | None = None


class BackgroundWriter:
    """Single-worker queue for writes that must never block or fail a chat turn.

    Jobs run in submission order. When the queue is full the oldest job is dropped.
    A job submitted with a ``key`` that is already pending is skipped.
    """

    def __init__(self, name: str, maxsize: int = 500) -> None:
        self.name = name
        self.queue: asyncio.Queue[PendingJob] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self.pending_keys: set[Hashable] = set()
        self._worker: asyncio.Task[None] | None = None
        self.dropped = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name=f"background-{self.name}")

    def submit(self, label: str, factory: JobFactory, *, key: Hashable | None = None) -> bool:
        if key is not None:
            if key in self.pending_keys:
                return False
            self.pending_keys.add(key)

        if self.queue.full():
            try:
                dropped = self.queue.get_nowait()
                self.queue.task_done()
                self.dropped += 1
                if dropped.key is not None:
                    self.pending_keys.discard(dropped.key)
                logger.warning("[background.%s] queue full, dropped oldest job=%s", self.name, dropped.label)
            except asyncio.QueueEmpty:
                pass

        try:
            self.queue.put_nowait(PendingJob(label=label, factory=factory, key=key))
        except asyncio.QueueFull:
            self.dropped += 1
            if key is not None:
                self.pending_keys.discard(key)
            logger.warning("[background.%s] queue full, dropped job=%s", self.name, label)
            return False
        return True

    async def _run(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await job.factory()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("[background.%s] job failed: %s", self.name, job.label)
            finally:
                if job.key is not None:
                    self.pending_keys.discard(job.key)
                self.queue.task_done()

    async def join(self) -> None:
        if not self.running:
            self.start()
        await self.queue.join()

    async def close(self, timeout: float = 5.0) -> None:
        if self.running:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "[background.%s] shutdown timed out with %s job(s) pending", self.name, self.queue.qsize()
                )
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
