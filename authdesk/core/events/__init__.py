"""
In-process event bus used as the notification surface towards the UI layer.
"""

from authdesk.core.events.redaction import redact
from authdesk.core.events.models import BaseEvent, EventSeverity, EventType, SourceSubsystem
from authdesk.core.events.bus import EventBus, EventBusConfig, OverflowPolicy

__all__ = [
    "redact",
    "BaseEvent",
    "EventSeverity",
    "EventType",
    "SourceSubsystem",
    "EventBus",
    "EventBusConfig",
    "OverflowPolicy",
]
