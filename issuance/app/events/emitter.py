from __future__ import annotations

from typing import Protocol

from issuance.app.events.models import IssuanceEvent


class IssuanceEventEmitter(Protocol):
    """
    Interface for broadcasting issuance observations.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not break the saga)
    - observational only
    """

    async def emit(self, event: IssuanceEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when nobody subscribes to progress (plain API calls, tests that
    do not care about events).
    """

    async def emit(self, event: IssuanceEvent) -> None:
        return
