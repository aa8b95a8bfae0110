from .models import IssuanceEvent, IssuanceEventType
from .emitter import IssuanceEventEmitter, NullEventEmitter
from .memory_emitter import MemoryQueueEventEmitter

__all__ = [
    "IssuanceEvent",
    "IssuanceEventType",
    "IssuanceEventEmitter",
    "NullEventEmitter",
    "MemoryQueueEventEmitter",
]
