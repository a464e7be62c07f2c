"""Processors for event normalization, reduction and projection."""

from .event_normalizer import EventNormalizer
from .hierarchy_reducer import HierarchyReducer
from .timeline_reconstructor import TimelineReconstructor
from .tree_projector import TreeProjector
from .thread_activity import ThreadActivityBuilder
from .file_processor import EventFileProcessor

__all__ = [
    "EventNormalizer",
    "HierarchyReducer",
    "TimelineReconstructor",
    "TreeProjector",
    "ThreadActivityBuilder",
    "EventFileProcessor",
]
