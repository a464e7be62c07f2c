"""Core components for coroutine hierarchy reconstruction."""

from .types import CoroutineNode, CoroutineState, EngineConfig, EventKind, SuspensionPoint, VizEvent
from .session import CoroutineSession, SessionRegistry

__all__ = [
    "CoroutineSession",
    "SessionRegistry",
    "CoroutineNode",
    "CoroutineState",
    "EngineConfig",
    "EventKind",
    "SuspensionPoint",
    "VizEvent",
]
