"""Adapters package - glue between the engine and its consumers."""
from __future__ import annotations

__all__ = [
    "EventBus",
]

from ccbridge.adapters.event_bus import EventBus
