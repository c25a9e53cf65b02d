"""Adapters package - stream events and their fan-out to viewers.

Connects the supervisor's decoded output to the HTTP streams and the
transcript sink.
"""
from __future__ import annotations

__all__ = [
    "EventBroadcaster",
    "EventSubscription",
    "StreamEvent",
    "event_to_dict",
]

from clihub.adapters.broadcaster import EventBroadcaster, EventSubscription
from clihub.adapters.events import StreamEvent, event_to_dict
