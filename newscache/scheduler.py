"""Bounded-concurrency task scheduling with advisory timeouts.

Admission is gated by a FIFO semaphore. Every admitted task receives an
``AbortSignal`` that is aborted once its timeout elapses. The signal is only a
request: a task that never looks at it keeps running until it finishes on its
own. Use ``with_abort`` to make an awaitable honour the signal.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class TaskAborted(asyncio.TimeoutError):
    pass


class AbortSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise TaskAborted(self.reason or "aborted")


@dataclass(frozen=True)
class TaskContext:
    signal: AbortSignal
    timeout: float


Task = Callable[[TaskContext], Awaitable[T]]


class TaskScheduler:
    def __init__(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1.")
        self._concurrency = concurrency
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._active = 0
        self._pending = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return self._pending

    async def schedule(self, timeout: float, task: Task[T]) -> T:
        semaphore = self._bind_loop()
        self._pending += 1
        try:
            await semaphore.acquire()
        finally:
            self._pending -= 1

        self._active += 1
        signal = AbortSignal()
        timer = asyncio.get_running_loop().call_later(max(0.0, timeout), signal.abort, "timeout")
        try:
            return await task(TaskContext(signal=signal, timeout=timeout))
        finally:
            timer.cancel()
            self._active -= 1
            semaphore.release()

    def _bind_loop(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            if self._active or self._pending:
                raise RuntimeError("TaskScheduler is already in use on another event loop.")
            self._loop = loop
            self._semaphore = asyncio.Semaphore(self._concurrency)
        return self._semaphore


def create_task_scheduler(concurrency: int) -> Callable[[float, Task[Any]], Awaitable[Any]]:
    scheduler = TaskScheduler(concurrency)

    async def schedule_task(timeout: float, task: Task[T]) -> T:
        return await scheduler.schedule(timeout, task)

    schedule_task.scheduler = scheduler  # type: ignore[attr-defined]
    return schedule_task


async def with_abort(awaitable: Awaitable[T], signal: AbortSignal) -> T:
    if signal.aborted:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        signal.raise_if_aborted()
    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work in done:
        return work.result()

    work.cancel()
    raise TaskAborted(signal.reason or "aborted")
