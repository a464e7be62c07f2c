"""
Per-session orchestrator for event reduction and queries.
"""

import secrets
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from ..core.types import CoroutineNode, EngineConfig, EventKind, HierarchyStats, VizEvent
from ..formatters import format_duration
from ..processors import (
    EventNormalizer,
    HierarchyReducer,
    TimelineReconstructor,
    TreeProjector,
    ThreadActivityBuilder,
)
from ..processors.hierarchy_reducer import EMPTY_NODE_MAP, NodeMap
from ..processors.timeline_reconstructor import CoroutineTimeline


class CoroutineSession:
    """
    One session's event log and reconstructed hierarchy.

    Events are applied one at a time under a lock. Every applied event
    swaps in a new snapshot, so readers never observe a half-applied event.
    """

    def __init__(self, session_id: Optional[str] = None, config: Optional[EngineConfig] = None):
        """
        Initialize an empty session.

        Args:
            session_id: Session id (a random id is generated when omitted)
            config: EngineConfig instance
        """
        self.session_id = session_id or secrets.token_hex(8)
        self.config = config or EngineConfig()

        self.normalizer = EventNormalizer()
        self.reducer = HierarchyReducer(self.config)
        self.timeline_reconstructor = TimelineReconstructor()
        self.thread_activity_builder = ThreadActivityBuilder()

        self._lock = threading.Lock()
        self._nodes: NodeMap = EMPTY_NODE_MAP
        self._events: List[VizEvent] = []
        self._seen_seqs = set()

        self.applied_count = 0
        self.dropped_count = 0
        self.duplicate_count = 0
        self.ignored_count = 0
        self.last_seq: Optional[int] = None

    def apply(self, raw: Any) -> bool:
        """
        Normalize and apply one raw record (or an already built VizEvent).

        Malformed records and records for another session are dropped;
        a seq that was already applied is a no-op.

        Args:
            raw: Raw record or VizEvent

        Returns:
            True if the event was applied
        """
        event = raw if isinstance(raw, VizEvent) else self.normalizer.to_event(raw)

        with self._lock:
            if event is None or (event.session_id and event.session_id != self.session_id):
                self.dropped_count += 1
                return False

            if event.seq in self._seen_seqs:
                self.duplicate_count += 1
                return False

            self._seen_seqs.add(event.seq)
            if event.kind not in EventKind.ALL:
                self.ignored_count += 1

            self._nodes = self.reducer.apply(event, self._nodes)
            if self.config.retain_events:
                self._events.append(event)
            self.applied_count += 1
            self.last_seq = event.seq if self.last_seq is None else max(self.last_seq, event.seq)
            return True

    def apply_many(self, records: Iterable[Any]) -> int:
        """
        Apply records in delivery order.

        Returns:
            Number of records that were applied
        """
        return sum(1 for record in records if self.apply(record))

    def snapshot(self) -> NodeMap:
        """Current read-only node map."""
        return self._nodes

    @property
    def coroutine_count(self) -> int:
        return len(self._nodes)

    @property
    def event_count(self) -> int:
        return self.applied_count

    def get_node(self, coroutine_id: str) -> Optional[CoroutineNode]:
        return self._nodes.get(coroutine_id)

    def hierarchy(self, scope_id: Optional[str] = None) -> Dict[str, CoroutineNode]:
        """Flat node map, optionally limited to one scope."""
        return TreeProjector.filter_by_scope(self._nodes, scope_id)

    def to_tree(self, scope_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return TreeProjector.to_tree(self.hierarchy(scope_id))

    def stats(self) -> HierarchyStats:
        return TreeProjector.stats(self._nodes)

    def relations(self, coroutine_id: str) -> Dict[str, Any]:
        return TreeProjector.relations(self._nodes, coroutine_id)

    def timeline(self, coroutine_id: str) -> CoroutineTimeline:
        """Timeline for one coroutine, enriched with its current node."""
        return self.timeline_reconstructor.reconstruct(
            coroutine_id,
            list(self._events),
            self._nodes.get(coroutine_id),
        )

    def timelines(self) -> Dict[str, CoroutineTimeline]:
        """
        Timelines for every coroutine in the snapshot.

        Events are grouped by coroutine in one pass, so the cost is linear
        in the number of retained events.
        """
        nodes = self._nodes
        by_coroutine: Dict[str, List[VizEvent]] = defaultdict(list)
        for event in list(self._events):
            by_coroutine[event.coroutine_id].append(event)
        return {
            coroutine_id: self.timeline_reconstructor.reconstruct(
                coroutine_id, by_coroutine.get(coroutine_id, []), node
            )
            for coroutine_id, node in nodes.items()
        }

    def thread_activity(self) -> Dict[str, Any]:
        return self.thread_activity_builder.build(list(self._events), self._nodes)

    def events(
        self,
        since_seq: Optional[int] = None,
        limit: Optional[int] = None,
        kinds: Optional[Iterable[str]] = None,
        coroutine_id: Optional[str] = None
    ) -> List[VizEvent]:
        """
        Retained events in seq order.

        Args:
            since_seq: Only events with seq greater than this
            limit: Maximum number of events returned
            kinds: Only these kinds
            coroutine_id: Only events naming this coroutine

        Returns:
            List of VizEvent
        """
        kind_filter = set(kinds) if kinds else None
        selected = [
            e for e in sorted(self._events, key=lambda e: e.seq)
            if (since_seq is None or e.seq > since_seq)
            and (kind_filter is None or e.kind in kind_filter)
            and (coroutine_id is None or e.coroutine_id == coroutine_id)
        ]
        if limit is not None and limit >= 0:
            selected = selected[:limit]
        return selected

    def summary(self) -> Dict[str, Any]:
        """Counters and aggregate stats for the session."""
        stats = self.stats()
        return {
            'sessionId': self.session_id,
            'coroutineCount': self.coroutine_count,
            'eventCount': self.applied_count,
            'droppedCount': self.dropped_count,
            'duplicateCount': self.duplicate_count,
            'ignoredCount': self.ignored_count,
            'lastSeq': self.last_seq,
            'stats': stats,
        }

    def report_summary(self) -> None:
        """Print a short summary of the session."""
        stats = self.stats()
        print(f"\nSession {self.session_id}: {self.applied_count} events applied, "
              f"{self.coroutine_count} coroutines")
        if self.dropped_count or self.duplicate_count or self.ignored_count:
            print(f"  Dropped {self.dropped_count} malformed, {self.duplicate_count} duplicate, "
                  f"{self.ignored_count} unknown-kind events")
        for state, count in stats['by_state'].items():
            if count:
                print(f"  {state}: {count}")
        for dispatcher, count in sorted(stats['by_dispatcher'].items(), key=lambda item: -item[1]):
            print(f"  dispatcher {dispatcher}: {count}")
        print(f"  Max depth: {stats['max_depth']}")
        print(f"  Avg active time: {format_duration(int(stats['avg_active_time']))}, "
              f"avg suspended time: {format_duration(int(stats['avg_suspended_time']))}")


class SessionRegistry:
    """In-memory registry of isolated sessions."""

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initialize the registry.

        Args:
            config: EngineConfig shared (read-only) by sessions created here
        """
        self.config = config or EngineConfig()
        self._sessions: Dict[str, CoroutineSession] = {}
        self._lock = threading.Lock()

    def create(self, session_id: Optional[str] = None) -> CoroutineSession:
        """
        Create a new session.

        Raises:
            ValueError: If a session with this id already exists
        """
        with self._lock:
            if session_id and session_id in self._sessions:
                raise ValueError(f"Session '{session_id}' already exists")
            session = CoroutineSession(session_id, self.config)
            while session.session_id in self._sessions:
                session = CoroutineSession(None, self.config)
            self._sessions[session.session_id] = session
            return session

    def get(self, session_id: str) -> Optional[CoroutineSession]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> CoroutineSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = CoroutineSession(session_id, self.config)
                self._sessions[session_id] = session
            return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Session ids with their coroutine and event counts."""
        return [
            {
                'sessionId': session.session_id,
                'coroutineCount': session.coroutine_count,
                'eventCount': session.event_count,
            }
            for session in list(self._sessions.values())
        ]

    def __len__(self) -> int:
        return len(self._sessions)
