"""Event system package"""
from .event_bus import EventBus, billing_event, get_event_bus

__all__ = [
    "EventBus",
    "billing_event",
    "get_event_bus",
]
