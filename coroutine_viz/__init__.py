"""
Coroutine Visualizer - hierarchy reconstruction from coroutine lifecycle events
"""

__version__ = "1.0.0"

from .core.session import CoroutineSession, SessionRegistry
from .core.types import CoroutineNode, CoroutineState, EngineConfig, EventKind, VizEvent

__all__ = [
    "CoroutineSession",
    "SessionRegistry",
    "CoroutineNode",
    "CoroutineState",
    "EngineConfig",
    "EventKind",
    "VizEvent",
]
