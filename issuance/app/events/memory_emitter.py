from __future__ import annotations

import asyncio
from typing import AsyncIterator, List

from issuance.app.events.models import IssuanceEvent, IssuanceEventType
from issuance.app.events.emitter import IssuanceEventEmitter

_TERMINAL_EVENTS = {
    IssuanceEventType.APPROVAL_COMPLETED,
    IssuanceEventType.APPROVAL_FAILED,
    IssuanceEventType.LEDGER_DIVERGENCE,
}


class MemoryQueueEventEmitter(IssuanceEventEmitter):
    """
    In-memory async event emitter for a single approval run.

    Properties:
    - single-consumer
    - non-blocking for the saga execution path
    - deterministic ordering
    - terminates on approval completion or failure
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[IssuanceEvent | None] = asyncio.Queue()
        self._closed = False
        self.history: List[IssuanceEvent] = []

    async def emit(self, event: IssuanceEvent) -> None:
        if self._closed:
            return

        self.history.append(event)
        try:
            await self._queue.put(event)
        except Exception:
            # Observability never breaks issuance
            return

        if event.event_type in _TERMINAL_EVENTS:
            await self.close()

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def stream(self) -> AsyncIterator[IssuanceEvent]:
        """
        Async generator yielding emitted events in order.
        """
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event
