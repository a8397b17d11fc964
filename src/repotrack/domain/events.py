from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    DISPATCH_STARTED = 'dispatch_started'
    DISPATCH_COMPLETED = 'dispatch_completed'
    ITEM_QUEUED = 'item_queued'
    ITEM_STARTED = 'item_started'
    ITEM_SUCCEEDED = 'item_succeeded'
    ITEM_FAILED = 'item_failed'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text

