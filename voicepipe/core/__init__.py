"""
voicepipe.core — Async event bus used as the shared stream transport.
"""

from voicepipe.core.event_bus import AsyncEventBus

__all__ = ["AsyncEventBus"]
