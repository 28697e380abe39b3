"""Per-request rendezvous queue fed by the worker registry."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Optional

from .errors import QueueClosedError, QueueTimeoutError
from .models import WorkerEvent

DEFAULT_TIMEOUT_S = 1_200.0


class Mailbox:
    """FIFO of worker events for exactly one request.

    Producers call :meth:`enqueue` from the frame handler; the owning
    dispatcher is the single consumer awaiting :meth:`dequeue`.
    """

    def __init__(self, request_id: str, default_timeout: float = DEFAULT_TIMEOUT_S):
        self.request_id = request_id
        self.default_timeout = default_timeout
        self._messages: Deque[WorkerEvent] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._messages)

    def enqueue(self, event: WorkerEvent) -> None:
        if self._closed:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(event)
                return
        self._messages.append(event)

    async def dequeue(self, timeout: Optional[float] = None) -> WorkerEvent:
        if self._closed:
            raise QueueClosedError(f"mailbox {self.request_id} is closed")
        if self._messages:
            return self._messages.popleft()

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        wait_s = self.default_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(waiter, timeout=wait_s)
        except asyncio.TimeoutError as exc:
            raise QueueTimeoutError(
                f"mailbox {self.request_id} timed out after {wait_s}s"
            ) from exc
        finally:
            try:
                self._waiters.remove(waiter)
            except ValueError:
                pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(
                    QueueClosedError(f"mailbox {self.request_id} is closed")
                )
        self._messages.clear()
