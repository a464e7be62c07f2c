"""
Timeline reconstruction for a single coroutine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..core.types import CoroutineNode, EventKind, SuspensionPoint, VizEvent


# Events that move a coroutine between running and not running
LIFECYCLE_KINDS = frozenset({
    EventKind.CREATED,
    EventKind.STARTED,
    EventKind.SUSPENDED,
    EventKind.RESUMED,
    EventKind.BODY_COMPLETED,
    EventKind.WAITING_FOR_CHILDREN,
    EventKind.COMPLETED,
    EventKind.CANCELLED,
    EventKind.FAILED,
})

# Lifecycle events after which the coroutine body is no longer running
STOP_KINDS = frozenset({
    EventKind.SUSPENDED,
    EventKind.BODY_COMPLETED,
    EventKind.WAITING_FOR_CHILDREN,
    EventKind.COMPLETED,
    EventKind.CANCELLED,
    EventKind.FAILED,
})


@dataclass
class TimelineEntry:
    """One event on a coroutine timeline."""
    seq: int
    timestamp: int
    kind: str
    relative_time: int = 0
    phase: str = 'transition'
    thread_id: Optional[Any] = None
    thread_name: Optional[str] = None
    dispatcher_id: Optional[str] = None
    dispatcher_name: Optional[str] = None
    suspension_point: Optional[SuspensionPoint] = None
    duration: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'seq': self.seq,
            'timestamp': self.timestamp,
            'kind': self.kind,
            'relativeTime': self.relative_time,
            'phase': self.phase,
            'threadId': self.thread_id,
            'threadName': self.thread_name,
            'dispatcherId': self.dispatcher_id,
            'dispatcherName': self.dispatcher_name,
            'suspensionPoint': self.suspension_point.to_dict() if self.suspension_point else None,
            'duration': self.duration,
        }


@dataclass
class CoroutineTimeline:
    """Derived timeline and timing totals (nanoseconds) for one coroutine."""
    coroutine_id: str
    total_duration: int = 0
    active_time: int = 0
    suspended_time: int = 0
    events: List[TimelineEntry] = field(default_factory=list)
    name: Optional[str] = None
    state: Optional[str] = None
    parent_id: Optional[str] = None
    children_ids: List[str] = field(default_factory=list)

    @property
    def active_percent(self) -> float:
        return percent_of(self.active_time, self.total_duration)

    @property
    def suspended_percent(self) -> float:
        return percent_of(self.suspended_time, self.total_duration)

    @property
    def suspension_count(self) -> int:
        return sum(1 for e in self.events if e.kind == EventKind.SUSPENDED)

    @property
    def dispatcher_switches(self) -> int:
        return sum(1 for e in self.events if e.kind == EventKind.DISPATCHER_SELECTED)

    @property
    def thread_switches(self) -> int:
        return sum(1 for e in self.events if e.kind == EventKind.THREAD_ASSIGNED)

    @property
    def avg_suspension_duration(self) -> float:
        """Mean over suspensions that were resumed; unmatched ones are left out."""
        durations = [
            e.duration for e in self.events
            if e.kind == EventKind.SUSPENDED and e.duration is not None
        ]
        if not durations:
            return 0.0
        return sum(durations) / len(durations)

    def suspension_points(self) -> List[Dict[str, Any]]:
        """Suspension points with the event they came from and their duration."""
        points = []
        for entry in self.events:
            if entry.kind == EventKind.SUSPENDED and entry.suspension_point is not None:
                point = entry.suspension_point.to_dict()
                point.update({
                    'eventSeq': entry.seq,
                    'timestamp': entry.timestamp,
                    'duration': entry.duration,
                })
                points.append(point)
        return points

    def dispatcher_switch_list(self) -> List[Dict[str, Any]]:
        """Dispatcher selections over time."""
        return [
            {
                'seq': e.seq,
                'timestamp': e.timestamp,
                'dispatcherId': e.dispatcher_id,
                'dispatcherName': e.dispatcher_name,
                'threadId': e.thread_id,
                'threadName': e.thread_name,
            }
            for e in self.events
            if e.kind == EventKind.DISPATCHER_SELECTED
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'coroutineId': self.coroutine_id,
            'name': self.name,
            'state': self.state,
            'parentId': self.parent_id,
            'childrenIds': list(self.children_ids),
            'totalDuration': self.total_duration,
            'activeTime': self.active_time,
            'suspendedTime': self.suspended_time,
            'activePercent': self.active_percent,
            'suspendedPercent': self.suspended_percent,
            'suspensionCount': self.suspension_count,
            'dispatcherSwitches': self.dispatcher_switches,
            'threadSwitches': self.thread_switches,
            'avgSuspensionDuration': self.avg_suspension_duration,
            'events': [e.to_dict() for e in self.events],
        }


def percent_of(part: int, total: int) -> float:
    """Percentage of `part` in `total`; 0.0 when total is 0."""
    if total <= 0:
        return 0.0
    return part / total * 100.0


class TimelineReconstructor:
    """Replays one coroutine's events into a timeline with computed durations."""

    @staticmethod
    def select_events(coroutine_id: str, events: Iterable[Optional[VizEvent]]) -> List[VizEvent]:
        """
        Filter a session's events down to one coroutine, de-duplicated by seq
        and ordered by seq.

        Args:
            coroutine_id: Coroutine to select
            events: Any iterable of normalized events

        Returns:
            Ordered event subsequence
        """
        by_seq: Dict[int, VizEvent] = {}
        for event in events:
            if event is None or event.coroutine_id != coroutine_id:
                continue
            by_seq.setdefault(event.seq, event)
        return [by_seq[seq] for seq in sorted(by_seq)]

    def reconstruct(
        self,
        coroutine_id: str,
        events: Iterable[Optional[VizEvent]],
        node: Optional[CoroutineNode] = None
    ) -> CoroutineTimeline:
        """
        Build the timeline for one coroutine.

        Active time runs from started/resumed until the next suspension or
        end of body. Each resumed event is paired with the suspended event
        immediately before it among lifecycle events; a suspension that is
        never resumed keeps `duration=None` and adds nothing to suspended time.

        Args:
            coroutine_id: Coroutine to reconstruct
            events: Events for the session or already filtered to the coroutine
            node: Optional snapshot node used for name/state/relations

        Returns:
            CoroutineTimeline
        """
        selected = self.select_events(coroutine_id, events)
        timeline = CoroutineTimeline(coroutine_id=coroutine_id)
        if node is not None:
            timeline.name = node.name
            timeline.state = node.state.value
            timeline.parent_id = node.parent_id
            timeline.children_ids = list(node.children)

        if not selected:
            return timeline

        first_ts = selected[0].ts_nanos
        last_ts = selected[-1].ts_nanos
        timeline.total_duration = max(0, last_ts - first_ts)

        active_since: Optional[int] = None
        previous_lifecycle: Optional[TimelineEntry] = None

        for event in selected:
            entry = self._entry_for(event, first_ts)
            timeline.events.append(entry)

            if event.kind not in LIFECYCLE_KINDS:
                continue

            if event.kind in (EventKind.STARTED, EventKind.RESUMED):
                if (event.kind == EventKind.RESUMED
                        and previous_lifecycle is not None
                        and previous_lifecycle.kind == EventKind.SUSPENDED):
                    duration = max(0, entry.timestamp - previous_lifecycle.timestamp)
                    previous_lifecycle.duration = duration
                    entry.duration = duration
                    timeline.suspended_time += duration
                if active_since is None:
                    active_since = entry.timestamp
            elif event.kind in STOP_KINDS and active_since is not None:
                timeline.active_time += max(0, entry.timestamp - active_since)
                active_since = None

            previous_lifecycle = entry

        if active_since is not None:
            # Still running when the stream ends
            timeline.active_time += max(0, last_ts - active_since)

        return timeline

    @staticmethod
    def _entry_for(event: VizEvent, base_ts: int) -> TimelineEntry:
        if event.kind in (EventKind.STARTED, EventKind.RESUMED):
            phase = 'active'
        elif event.kind == EventKind.SUSPENDED:
            phase = 'suspended'
        else:
            phase = 'transition'

        return TimelineEntry(
            seq=event.seq,
            timestamp=event.ts_nanos,
            kind=event.kind,
            relative_time=event.ts_nanos - base_ts,
            phase=phase,
            thread_id=event.get('thread_id'),
            thread_name=event.get('thread_name'),
            dispatcher_id=event.get('dispatcher_id'),
            dispatcher_name=event.get('dispatcher_name'),
            suspension_point=event.suspension_point,
        )
