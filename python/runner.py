# -*- coding: utf8 -*-
"""A single-consumer task queue that executes one item at a time."""

import asyncio
import logging
from collections import deque
from concurrent import futures
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Deque,
    Generic,
    Iterable,
    Optional,
    TypeVar,
)

T = TypeVar("T")

if TYPE_CHECKING:
    TerminationFuture = futures.Future[None]
    DrainFuture = asyncio.Future[None]
else:
    TerminationFuture = futures.Future
    DrainFuture = asyncio.Future


class Status(Enum):
    """Whether a Runner is currently executing something."""

    IDLE = "idle"
    BUSY = "busy"


def _resolved() -> DrainFuture:
    """Return a future that is already done."""
    fut = asyncio.get_running_loop().create_future()
    fut.set_result(None)
    return fut


class Runner(Generic[T]):
    """Execute queued items in order, never more than one at a time."""

    def __init__(
        self,
        execute: Callable[[T], Awaitable[None]],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the queue.

        queue - Items waiting to be executed (FIFO)
        status - BUSY while a drain is in progress
        execute - Called on each item, awaited before the next one starts
        terminated - Settled once, after termination was requested and the
                     queue is empty
        should_terminate - Set when termination is requested while BUSY
        """
        self.queue: Deque[T] = deque()
        self.status = Status.IDLE
        self.execute = execute
        self.terminated: TerminationFuture = futures.Future()
        self.should_terminate = False
        self.drain: Optional[DrainFuture] = None
        self.logger = logger if logger is not None else logging.getLogger(str(id(self)))

    def run(self) -> DrainFuture:
        """Start draining the queue unless a drain is already in progress."""
        if self.status is Status.BUSY:
            # The drain in progress will pick up anything appended since
            self.logger.debug("run: already busy with %d queued", len(self.queue))
            return _resolved()

        if not self.queue:
            if self.should_terminate:
                self._settle()
            return _resolved()

        # Mark as BUSY before yielding to the event loop so that a
        # `terminate()` issued in the meantime waits for this item.
        task = self.queue.popleft()
        self.status = Status.BUSY
        self.drain = asyncio.ensure_future(self._drain(task))
        return self.drain

    async def _drain(self, task: T) -> None:
        """Execute 'task' and everything queued after it."""
        try:
            while True:
                try:
                    await self.execute(task)
                except Exception:  # pylint: disable=broad-except
                    self.logger.exception("Failed to execute %r", task)
                if not self.queue:
                    break
                task = self.queue.popleft()
        finally:
            self.status = Status.IDLE

        if self.should_terminate:
            self._settle()

    def push(self, task: T) -> None:
        """Append 'task' and make sure it will be executed."""
        self.queue.append(task)
        self.run()

    def push_many(self, tasks: Iterable[T]) -> None:
        """Append all of 'tasks' in order and make sure they will be executed."""
        self.queue.extend(tasks)
        self.run()

    def terminate(self) -> Awaitable[None]:
        """Settle the termination signal once the queue has been drained."""
        if self.status is Status.IDLE:
            self._settle()
        else:
            self.should_terminate = True
        return asyncio.wrap_future(self.terminated)

    def _settle(self) -> None:
        # Settling an already settled signal is allowed and does nothing
        if not self.terminated.done():
            self.terminated.set_result(None)
