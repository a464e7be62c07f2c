"""
Type definitions for coroutine hierarchy reconstruction.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Optional, Tuple, TypedDict


class CoroutineState(str, Enum):
    """Lifecycle state of a coroutine node."""
    CREATED = 'CREATED'
    ACTIVE = 'ACTIVE'
    SUSPENDED = 'SUSPENDED'
    WAITING_FOR_CHILDREN = 'WAITING_FOR_CHILDREN'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    FAILED = 'FAILED'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    CoroutineState.COMPLETED,
    CoroutineState.CANCELLED,
    CoroutineState.FAILED,
})

# Child states that keep a parent's job open after its body finished
RUNNING_CHILD_STATES = frozenset({
    CoroutineState.CREATED,
    CoroutineState.ACTIVE,
    CoroutineState.SUSPENDED,
})


class EventKind:
    """Canonical event kinds as emitted by the instrumented runtime."""
    CREATED = 'coroutine.created'
    STARTED = 'coroutine.started'
    SUSPENDED = 'coroutine.suspended'
    RESUMED = 'coroutine.resumed'
    BODY_COMPLETED = 'coroutine.body-completed'
    COMPLETED = 'coroutine.completed'
    CANCELLED = 'coroutine.cancelled'
    FAILED = 'coroutine.failed'
    THREAD_ASSIGNED = 'thread.assigned'
    DISPATCHER_SELECTED = 'DispatcherSelected'
    JOB_STATE_CHANGED = 'JobStateChanged'
    JOB_CANCELLATION_REQUESTED = 'JobCancellationRequested'
    JOB_JOIN_REQUESTED = 'JobJoinRequested'
    JOB_JOIN_COMPLETED = 'JobJoinCompleted'
    WAITING_FOR_CHILDREN = 'WaitingForChildren'
    DEFERRED_VALUE_AVAILABLE = 'DeferredValueAvailable'
    DEFERRED_AWAIT_STARTED = 'DeferredAwaitStarted'
    DEFERRED_AWAIT_COMPLETED = 'DeferredAwaitCompleted'
    UNKNOWN = 'unknown'

    ALL = frozenset({
        CREATED, STARTED, SUSPENDED, RESUMED, BODY_COMPLETED, COMPLETED,
        CANCELLED, FAILED, THREAD_ASSIGNED, DISPATCHER_SELECTED,
        JOB_STATE_CHANGED, JOB_CANCELLATION_REQUESTED, JOB_JOIN_REQUESTED,
        JOB_JOIN_COMPLETED, WAITING_FOR_CHILDREN, DEFERRED_VALUE_AVAILABLE,
        DEFERRED_AWAIT_STARTED, DEFERRED_AWAIT_COMPLETED,
    })

    TERMINAL = {
        COMPLETED: CoroutineState.COMPLETED,
        CANCELLED: CoroutineState.CANCELLED,
        FAILED: CoroutineState.FAILED,
    }


@dataclass(frozen=True)
class SuspensionPoint:
    """Where and why a coroutine yielded control."""
    function: str
    reason: str
    timestamp: int = 0
    file_name: Optional[str] = None
    line_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'function': self.function,
            'fileName': self.file_name,
            'lineNumber': self.line_number,
            'reason': self.reason,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class VizEvent:
    """
    A normalized lifecycle event.

    `payload` keeps the kind-specific fields (already renamed to snake_case)
    that do not have a dedicated attribute.
    """
    seq: int
    kind: str
    session_id: Optional[str] = None
    ts_nanos: int = 0
    coroutine_id: Optional[str] = None
    job_id: Optional[str] = None
    parent_id: Optional[str] = None
    scope_id: Optional[str] = None
    label: Optional[str] = None
    suspension_point: Optional[SuspensionPoint] = None
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a kind-specific payload field."""
        return self.payload.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire shape used by the query API."""
        data = {
            'sessionId': self.session_id,
            'seq': self.seq,
            'tsNanos': self.ts_nanos,
            'kind': self.kind,
            'coroutineId': self.coroutine_id,
            'jobId': self.job_id,
            'parentCoroutineId': self.parent_id,
            'scopeId': self.scope_id,
            'label': self.label,
        }
        if self.suspension_point is not None:
            data['suspensionPoint'] = self.suspension_point.to_dict()
        for key, value in self.payload.items():
            data.setdefault(_camel_case(key), value)
        return data


class SeenSeqs:
    """
    Persistent set of seqs already applied to a node.

    Versions share one insertion-ordered index and each version only sees
    the entries added before it was created. Adding to the newest version
    is O(1). Adding to an older version copies the entries it can see, so
    earlier snapshots never observe later additions.
    """
    __slots__ = ('_index', '_size')

    def __init__(self, index: Optional[Dict[int, int]] = None, size: int = 0):
        self._index = index if index is not None else {}
        self._size = size

    def __contains__(self, seq: object) -> bool:
        position = self._index.get(seq)
        return position is not None and position < self._size

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[int]:
        return (seq for seq, position in list(self._index.items()) if position < self._size)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SeenSeqs):
            return NotImplemented
        return len(self) == len(other) and all(seq in other for seq in self)

    __hash__ = None

    def add(self, seq: int) -> 'SeenSeqs':
        """Return a version that also contains `seq`."""
        if seq in self:
            return self
        index = self._index
        if len(index) != self._size:
            # A newer version already extended the shared index
            index = {s: p for s, p in index.items() if p < self._size}
        index[seq] = self._size
        return SeenSeqs(index, self._size + 1)


@dataclass(frozen=True)
class CoroutineNode:
    """
    Reconstructed state of one coroutine.

    Nodes are never mutated; the reducer replaces them with
    `dataclasses.replace`. `active_children_ids` is None when only a count
    is known (e.g. from a JobStateChanged event).
    """
    id: str
    job_id: str = ''
    parent_id: Optional[str] = None
    scope_id: str = ''
    label: Optional[str] = None
    state: CoroutineState = CoroutineState.CREATED
    created_at: int = 0
    completed_at: Optional[int] = None
    current_thread_id: Optional[int] = None
    current_thread_name: Optional[str] = None
    dispatcher_id: Optional[str] = None
    dispatcher_name: Optional[str] = None
    children: Tuple[str, ...] = ()
    active_children_ids: Optional[FrozenSet[str]] = frozenset()
    active_children_count: int = 0
    active_time: int = 0
    suspended_time: int = 0
    suspension_points: Tuple[SuspensionPoint, ...] = ()
    current_suspension: Optional[SuspensionPoint] = None
    body_completed: bool = False
    explicit_children_payload: bool = False
    failure_propagates: bool = False
    failure_cause: Optional[str] = None
    cancellation_requested: bool = False
    cancellation_requested_by: Optional[str] = None
    cancellation_cause: Optional[str] = None
    joiners: FrozenSet[str] = frozenset()
    deferred_value_available: bool = False
    awaiting_deferred: Optional[str] = None
    declared: bool = False
    last_transition_at: Optional[int] = None
    seen_seqs: SeenSeqs = field(default_factory=SeenSeqs, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def name(self) -> str:
        return self.label or self.id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the hierarchy node shape used by the query API."""
        return {
            'id': self.id,
            'jobId': self.job_id,
            'parentId': self.parent_id,
            'scopeId': self.scope_id,
            'label': self.label,
            'name': self.name,
            'state': self.state.value,
            'children': list(self.children),
            'createdAtNanos': self.created_at,
            'completedAtNanos': self.completed_at,
            'currentThreadId': self.current_thread_id,
            'currentThreadName': self.current_thread_name,
            'dispatcherId': self.dispatcher_id,
            'dispatcherName': self.dispatcher_name,
            'activeChildrenIds': (
                sorted(self.active_children_ids)
                if self.active_children_ids is not None else None
            ),
            'activeChildrenCount': self.active_children_count,
            'activeTime': self.active_time,
            'suspendedTime': self.suspended_time,
            'suspensionPoints': [p.to_dict() for p in self.suspension_points],
            'bodyCompleted': self.body_completed,
            'failurePropagates': self.failure_propagates,
            'failureCause': self.failure_cause,
            'cancellationRequested': self.cancellation_requested,
            'joiners': sorted(self.joiners),
        }


class HierarchyStats(TypedDict):
    """Aggregate statistics over a snapshot."""
    total: int
    by_state: Dict[str, int]
    by_dispatcher: Dict[str, int]
    max_depth: int
    avg_active_time: float
    avg_suspended_time: float


class EngineConfig:
    """Configuration for event reduction."""

    def __init__(
        self,
        infer_waiting_from_children: bool = True,
        record_suspension_points: bool = True,
        retain_events: bool = True,
        max_suspension_points: Optional[int] = None
    ):
        """
        Initialize engine configuration.

        Args:
            infer_waiting_from_children: If True, a body-completed event moves a node
                                         with running children to WAITING_FOR_CHILDREN.
                                         Default: True

            record_suspension_points: If True, suspension points carried by suspended
                                      events are appended to the node history.
                                      Default: True

            retain_events: If True, sessions keep every applied event so timelines
                           and thread lanes can be reconstructed later.
                           Default: True

            max_suspension_points: Keep at most this many suspension points per node
                                   (oldest dropped first). Default: None (unbounded)
        """
        if max_suspension_points is not None and max_suspension_points < 0:
            raise ValueError(
                f"max_suspension_points must be >= 0, got {max_suspension_points}"
            )
        self.infer_waiting_from_children = infer_waiting_from_children
        self.record_suspension_points = record_suspension_points
        self.retain_events = retain_events
        self.max_suspension_points = max_suspension_points


def _camel_case(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.capitalize() for part in rest)
