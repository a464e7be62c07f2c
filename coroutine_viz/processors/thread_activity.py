"""
Thread lane reconstruction from thread assignment events.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..core.types import CoroutineNode, EventKind, VizEvent
from ..formatters import busy_time, calculate_utilization


# Events that take a coroutine off its thread
RELEASE_KINDS = frozenset({
    EventKind.SUSPENDED,
    EventKind.BODY_COMPLETED,
    EventKind.WAITING_FOR_CHILDREN,
    EventKind.COMPLETED,
    EventKind.CANCELLED,
    EventKind.FAILED,
})


@dataclass
class ThreadSegment:
    """A stretch of time one coroutine ran on one thread."""
    coroutine_id: str
    start_nanos: int
    end_nanos: Optional[int] = None
    coroutine_name: Optional[str] = None
    state: str = 'ACTIVE'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coroutineId': self.coroutine_id,
            'coroutineName': self.coroutine_name,
            'startNanos': self.start_nanos,
            'endNanos': self.end_nanos,
            'state': self.state,
        }


@dataclass
class ThreadLane:
    """All segments observed on one thread."""
    thread_id: Any
    thread_name: Optional[str] = None
    dispatcher_id: Optional[str] = None
    dispatcher_name: Optional[str] = None
    segments: List[ThreadSegment] = field(default_factory=list)
    utilization: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'threadId': self.thread_id,
            'threadName': self.thread_name,
            'dispatcherId': self.dispatcher_id,
            'dispatcherName': self.dispatcher_name,
            'segments': [s.to_dict() for s in self.segments],
            'utilization': self.utilization,
        }


class ThreadActivityBuilder:
    """Builds per-thread lanes and dispatcher summaries from a session's events."""

    def build(
        self,
        events: Iterable[Optional[VizEvent]],
        snapshot: Optional[Mapping[str, CoroutineNode]] = None
    ) -> Dict[str, Any]:
        """
        Reconstruct thread lanes.

        A segment opens on thread.assigned and closes on the coroutine's next
        suspension, end of body or terminal event, or when it is assigned to
        another thread. Segments still open at the end of the stream have
        `end_nanos=None` and count as busy until the last event.

        Args:
            events: Session events (duplicates by seq are ignored)
            snapshot: Optional node map used for coroutine names

        Returns:
            Dictionary with 'threads' (list of lanes) and 'dispatcherInfo'
        """
        ordered = _ordered_unique(events)
        lanes: Dict[Any, ThreadLane] = {}
        open_segments: Dict[str, Tuple[ThreadLane, ThreadSegment]] = {}
        coroutine_dispatchers: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
        dispatchers: Dict[str, Dict[str, Any]] = {}

        for event in ordered:
            coroutine_id = event.coroutine_id
            ts = event.ts_nanos

            if event.kind == EventKind.DISPATCHER_SELECTED:
                dispatcher_id = _text(event.get('dispatcher_id'))
                dispatcher_name = _text(event.get('dispatcher_name'))
                coroutine_dispatchers[coroutine_id] = (dispatcher_id, dispatcher_name)
                info = self._dispatcher_entry(dispatchers, dispatcher_id, dispatcher_name)
                if info is not None and event.get('queue_depth') is not None:
                    info['queueDepth'] = event.get('queue_depth')

            elif event.kind == EventKind.THREAD_ASSIGNED:
                thread_id = event.get('thread_id')
                if thread_id is None:
                    continue
                self._close(open_segments, coroutine_id, ts)

                dispatcher_id, dispatcher_name = coroutine_dispatchers.get(coroutine_id, (None, None))
                dispatcher_name = _text(event.get('dispatcher_name')) or dispatcher_name
                lane = lanes.get(thread_id)
                if lane is None:
                    lane = ThreadLane(thread_id=thread_id)
                    lanes[thread_id] = lane
                lane.thread_name = _text(event.get('thread_name')) or lane.thread_name
                if dispatcher_name:
                    lane.dispatcher_name = dispatcher_name
                    info = self._dispatcher_entry(dispatchers, dispatcher_id, dispatcher_name)
                    lane.dispatcher_id = info['id']
                    if thread_id not in info['threadIds']:
                        info['threadIds'].append(thread_id)

                segment = ThreadSegment(
                    coroutine_id=coroutine_id,
                    start_nanos=ts,
                    coroutine_name=_name_of(snapshot, coroutine_id),
                )
                lane.segments.append(segment)
                open_segments[coroutine_id] = (lane, segment)

            elif event.kind in RELEASE_KINDS:
                self._close(open_segments, coroutine_id, ts)

        if ordered:
            window_start = ordered[0].ts_nanos
            window_end = max(e.ts_nanos for e in ordered)
        else:
            window_start = window_end = 0

        for lane in lanes.values():
            intervals = [
                (s.start_nanos, s.end_nanos if s.end_nanos is not None else window_end)
                for s in lane.segments
            ]
            lane.utilization = calculate_utilization(busy_time(intervals), window_end - window_start)

        return {
            'threads': [lane.to_dict() for lane in lanes.values()],
            'dispatcherInfo': list(dispatchers.values()),
        }

    @staticmethod
    def _close(open_segments: Dict[str, Tuple[ThreadLane, ThreadSegment]], coroutine_id: str, ts: int) -> None:
        entry = open_segments.pop(coroutine_id, None)
        if entry is not None:
            _, segment = entry
            segment.end_nanos = max(ts, segment.start_nanos)

    @staticmethod
    def _dispatcher_entry(
        dispatchers: Dict[str, Dict[str, Any]],
        dispatcher_id: Optional[str],
        dispatcher_name: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        if not dispatcher_id and not dispatcher_name:
            return None
        key = dispatcher_id or f"dispatcher-{dispatcher_name}"
        if key not in dispatchers:
            # A named entry may have been registered before its id was known
            by_name = f"dispatcher-{dispatcher_name}" if dispatcher_name else None
            if by_name and by_name in dispatchers:
                return dispatchers[by_name]
            dispatchers[key] = {
                'id': key,
                'name': dispatcher_name or key,
                'threadIds': [],
                'queueDepth': None,
            }
        return dispatchers[key]


def _ordered_unique(events: Iterable[Optional[VizEvent]]) -> List[VizEvent]:
    by_seq: Dict[int, VizEvent] = {}
    for event in events:
        if event is not None and event.coroutine_id is not None:
            by_seq.setdefault(event.seq, event)
    return [by_seq[seq] for seq in sorted(by_seq)]


def _name_of(snapshot: Optional[Mapping[str, CoroutineNode]], coroutine_id: str) -> Optional[str]:
    if snapshot is None or coroutine_id not in snapshot:
        return None
    return snapshot[coroutine_id].label


def _text(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)
