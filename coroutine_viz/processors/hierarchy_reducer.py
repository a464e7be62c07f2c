"""
Hierarchy reducer for coroutine lifecycle events.
"""

from dataclasses import replace
from functools import reduce
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from ..core.types import (
    CoroutineNode,
    CoroutineState,
    EngineConfig,
    EventKind,
    RUNNING_CHILD_STATES,
    VizEvent,
)

NodeMap = Mapping[str, CoroutineNode]

EMPTY_NODE_MAP: NodeMap = MappingProxyType({})


class HierarchyReducer:
    """
    Folds normalized events into a map of coroutine id -> CoroutineNode.

    `apply` is a pure function: the input map is never modified and a new
    read-only map is returned whenever the event changes anything. Readers
    holding an older map keep a consistent view.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        """
        Initialize the reducer.

        Args:
            config: EngineConfig instance (defaults are used when omitted)
        """
        self.config = config or EngineConfig()
        self._handlers: Dict[str, Callable[[VizEvent, CoroutineNode, Dict[str, CoroutineNode]], CoroutineNode]] = {
            EventKind.CREATED: self._on_created,
            EventKind.STARTED: self._on_running,
            EventKind.RESUMED: self._on_running,
            EventKind.SUSPENDED: self._on_suspended,
            EventKind.BODY_COMPLETED: self._on_body_completed,
            EventKind.WAITING_FOR_CHILDREN: self._on_waiting_for_children,
            EventKind.JOB_STATE_CHANGED: self._on_job_state_changed,
            EventKind.COMPLETED: self._on_terminal,
            EventKind.CANCELLED: self._on_terminal,
            EventKind.FAILED: self._on_terminal,
            EventKind.THREAD_ASSIGNED: self._on_thread_assigned,
            EventKind.DISPATCHER_SELECTED: self._on_dispatcher_selected,
            EventKind.JOB_CANCELLATION_REQUESTED: self._on_cancellation_requested,
            EventKind.JOB_JOIN_REQUESTED: self._on_join,
            EventKind.JOB_JOIN_COMPLETED: self._on_join,
            EventKind.DEFERRED_VALUE_AVAILABLE: self._on_deferred_value,
            EventKind.DEFERRED_AWAIT_STARTED: self._on_deferred_await,
            EventKind.DEFERRED_AWAIT_COMPLETED: self._on_deferred_await,
        }

    def apply(self, event: Optional[VizEvent], nodes: NodeMap = EMPTY_NODE_MAP) -> NodeMap:
        """
        Apply one event to a node map.

        Args:
            event: Normalized event (None is ignored)
            nodes: Current node map snapshot

        Returns:
            The same map when the event is ignored or already applied,
            otherwise a new read-only map
        """
        if event is None:
            return nodes

        handler = self._handlers.get(event.kind)
        target_id = self._target_id(event)
        if handler is None or target_id is None:
            return nodes

        existing = nodes.get(target_id)
        if existing is not None and event.seq in existing.seen_seqs:
            return nodes

        updated = dict(nodes)
        node = existing
        if node is None:
            node = self._lazy_node(target_id, event)
            updated[target_id] = node
            self._adopt_orphans(node, updated, event.ts_nanos)
            node = updated[target_id]

        node = handler(event, node, updated)
        updated[target_id] = replace(node, seen_seqs=node.seen_seqs.add(event.seq))
        return MappingProxyType(updated)

    def apply_all(self, events: Iterable[Optional[VizEvent]], nodes: NodeMap = EMPTY_NODE_MAP) -> NodeMap:
        """Fold a sequence of events, in order, into a node map."""
        return reduce(lambda acc, event: self.apply(event, acc), events, nodes)

    # -- node helpers -------------------------------------------------------

    @staticmethod
    def _target_id(event: VizEvent) -> Optional[str]:
        if event.kind in (EventKind.DEFERRED_AWAIT_STARTED, EventKind.DEFERRED_AWAIT_COMPLETED):
            awaiting = event.get('awaiting_coroutine_id')
            if awaiting:
                return str(awaiting)
        return event.coroutine_id

    @staticmethod
    def _lazy_node(coroutine_id: str, event: VizEvent) -> CoroutineNode:
        """Create a placeholder for an id first seen in a non-creation event."""
        owned = event.coroutine_id == coroutine_id
        return CoroutineNode(
            id=coroutine_id,
            job_id=(event.job_id or '') if owned else '',
            scope_id=(event.scope_id or '') if owned else '',
            created_at=event.ts_nanos,
            last_transition_at=event.ts_nanos,
        )

    def _transition(self, node: CoroutineNode, state: CoroutineState, ts: int) -> CoroutineNode:
        """
        Move a node to `state`, accumulating time spent in the previous one.

        Terminal nodes are returned unchanged.
        """
        if node.is_terminal:
            return node

        active_time = node.active_time
        suspended_time = node.suspended_time
        last = node.last_transition_at
        if last is not None:
            delta = max(0, ts - last)
            if node.state == CoroutineState.ACTIVE:
                active_time += delta
            elif node.state == CoroutineState.SUSPENDED:
                suspended_time += delta
            ts = max(ts, last)

        return replace(
            node,
            state=state,
            active_time=active_time,
            suspended_time=suspended_time,
            last_transition_at=ts,
        )

    def _link_child(self, parent_id: str, child: CoroutineNode, nodes: Dict[str, CoroutineNode], ts: int) -> None:
        """Append `child` to its parent's children if the parent is known."""
        parent = nodes.get(parent_id)
        if parent is None or child.id in parent.children:
            return

        parent = replace(parent, children=parent.children + (child.id,))
        if not parent.is_terminal and not child.is_terminal:
            if parent.active_children_ids is not None:
                active = parent.active_children_ids | {child.id}
                parent = replace(parent, active_children_ids=active, active_children_count=len(active))
            if (self.config.infer_waiting_from_children
                    and parent.body_completed
                    and child.state in RUNNING_CHILD_STATES
                    and parent.state != CoroutineState.WAITING_FOR_CHILDREN):
                parent = self._transition(parent, CoroutineState.WAITING_FOR_CHILDREN, ts)
        nodes[parent_id] = parent

    def _adopt_orphans(self, parent: CoroutineNode, nodes: Dict[str, CoroutineNode], ts: int) -> None:
        """Link nodes that arrived before their parent, in map order."""
        orphans = [
            node for node in nodes.values()
            if node.parent_id == parent.id and node.id != parent.id
        ]
        for orphan in orphans:
            self._link_child(parent.id, orphan, nodes, ts)

    def _release_from_parent(self, child: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> None:
        """Drop a terminated child from its parent's active-children set."""
        if not child.parent_id:
            return
        parent = nodes.get(child.parent_id)
        if parent is None:
            return
        if parent.active_children_ids is None:
            # Count-only: the ids behind the count are unknown
            if parent.active_children_count > 0:
                nodes[parent.id] = replace(parent, active_children_count=parent.active_children_count - 1)
        elif child.id in parent.active_children_ids:
            active = parent.active_children_ids - {child.id}
            nodes[parent.id] = replace(parent, active_children_ids=active, active_children_count=len(active))

    # -- handlers -----------------------------------------------------------

    def _on_created(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.declared:
            return node

        node = replace(
            node,
            declared=True,
            parent_id=node.parent_id or event.parent_id,
            job_id=event.job_id or node.job_id,
            scope_id=event.scope_id or node.scope_id,
            label=event.label or node.label,
            created_at=event.ts_nanos,
        )
        if node.parent_id == node.id:
            # Self-parenting is malformed; keep the node as a root
            node = replace(node, parent_id=None)
        nodes[node.id] = node

        if node.parent_id:
            self._link_child(node.parent_id, node, nodes, event.ts_nanos)
        self._adopt_orphans(node, nodes, event.ts_nanos)
        return nodes[node.id]

    def _on_running(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.is_terminal:
            return node
        node = self._transition(node, CoroutineState.ACTIVE, event.ts_nanos)
        return replace(node, current_suspension=None)

    def _on_suspended(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.is_terminal:
            return node

        node = self._transition(node, CoroutineState.SUSPENDED, event.ts_nanos)
        point = event.suspension_point
        points = node.suspension_points
        if point is not None and self.config.record_suspension_points:
            points = points + (point,)
            cap = self.config.max_suspension_points
            if cap is not None:
                points = points[-cap:] if cap else ()

        return replace(
            node,
            suspension_points=points,
            current_suspension=point,
            current_thread_id=None,
            current_thread_name=None,
        )

    def _on_body_completed(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.is_terminal:
            return node

        node = replace(node, body_completed=True)
        children = [nodes[child_id] for child_id in node.children if child_id in nodes]
        running = [child for child in children if child.state in RUNNING_CHILD_STATES]

        if not node.explicit_children_payload:
            not_terminal = frozenset(child.id for child in children if not child.is_terminal)
            node = replace(node, active_children_ids=not_terminal, active_children_count=len(not_terminal))

        if running and self.config.infer_waiting_from_children:
            node = self._transition(node, CoroutineState.WAITING_FOR_CHILDREN, event.ts_nanos)
        return node

    def _on_waiting_for_children(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.is_terminal:
            return node

        node = self._transition(node, CoroutineState.WAITING_FOR_CHILDREN, event.ts_nanos)
        raw_ids = event.get('active_children_ids')
        count = _as_count(event.get('active_children_count'))

        if isinstance(raw_ids, (list, tuple, set, frozenset)):
            ids = frozenset(str(child_id) for child_id in raw_ids)
            # The id list wins when the payload disagrees with itself
            return replace(
                node,
                body_completed=True,
                explicit_children_payload=True,
                active_children_ids=ids,
                active_children_count=len(ids),
            )

        if count is not None:
            return replace(
                node,
                body_completed=True,
                explicit_children_payload=True,
                active_children_ids=None,
                active_children_count=count,
            )
        return replace(node, body_completed=True)

    def _on_job_state_changed(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.is_terminal:
            return node

        children_count = _as_count(event.get('children_count')) or 0
        target = self.derive_job_state(
            is_active=_as_flag(event.get('is_active')),
            is_completed=_as_flag(event.get('is_completed')),
            is_cancelled=_as_flag(event.get('is_cancelled')),
            children_count=children_count,
        )
        if target is None:
            return node

        if target.is_terminal:
            return self._terminate(node, target, event, nodes)

        node = self._transition(node, target, event.ts_nanos)
        if target == CoroutineState.WAITING_FOR_CHILDREN:
            ids = node.active_children_ids
            if ids is not None and len(ids) != children_count:
                ids = None
            node = replace(node, active_children_ids=ids, active_children_count=children_count)
        return node

    @staticmethod
    def derive_job_state(
        is_active: bool,
        is_completed: bool,
        is_cancelled: bool,
        children_count: int
    ) -> Optional[CoroutineState]:
        """
        Derive a node state from job flags.

        Priority: cancelled > completed > active with children (waiting) > active.

        Returns:
            Target state, or None when the flags carry no state information
        """
        if is_cancelled:
            return CoroutineState.CANCELLED
        if is_completed:
            return CoroutineState.COMPLETED
        if is_active and children_count > 0:
            return CoroutineState.WAITING_FOR_CHILDREN
        if is_active:
            return CoroutineState.ACTIVE
        return None

    def _on_terminal(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        return self._terminate(node, EventKind.TERMINAL[event.kind], event, nodes)

    def _terminate(
        self,
        node: CoroutineNode,
        state: CoroutineState,
        event: VizEvent,
        nodes: Dict[str, CoroutineNode]
    ) -> CoroutineNode:
        if node.is_terminal:
            return node

        node = self._transition(node, state, event.ts_nanos)
        node = replace(
            node,
            completed_at=event.ts_nanos,
            active_children_ids=frozenset(),
            active_children_count=0,
            current_thread_id=None,
            current_thread_name=None,
            current_suspension=None,
        )
        if state == CoroutineState.FAILED:
            cause = event.get('cause') or event.get('exception_type') or event.get('message')
            node = replace(
                node,
                failure_propagates=True,
                failure_cause=str(cause) if cause is not None else None,
            )

        self._release_from_parent(node, nodes)
        return node

    def _on_thread_assigned(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if node.is_terminal:
            return node
        thread_id = event.get('thread_id')
        dispatcher_name = event.get('dispatcher_name')
        return replace(
            node,
            current_thread_id=_as_count(thread_id) if thread_id is not None else None,
            current_thread_name=_as_text(event.get('thread_name')),
            dispatcher_name=_as_text(dispatcher_name) or node.dispatcher_name,
        )

    def _on_dispatcher_selected(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        return replace(
            node,
            dispatcher_id=_as_text(event.get('dispatcher_id')) or node.dispatcher_id,
            dispatcher_name=_as_text(event.get('dispatcher_name')) or node.dispatcher_name,
        )

    def _on_cancellation_requested(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        return replace(
            node,
            cancellation_requested=True,
            cancellation_requested_by=_as_text(event.get('requested_by')),
            cancellation_cause=_as_text(event.get('cause')),
        )

    def _on_join(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        waiting = _as_text(event.get('waiting_coroutine_id'))
        if waiting is None:
            return node
        if event.kind == EventKind.JOB_JOIN_REQUESTED:
            return replace(node, joiners=node.joiners | {waiting})
        return replace(node, joiners=node.joiners - {waiting})

    def _on_deferred_value(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        return replace(node, deferred_value_available=True)

    def _on_deferred_await(self, event: VizEvent, node: CoroutineNode, nodes: Dict[str, CoroutineNode]) -> CoroutineNode:
        if event.kind == EventKind.DEFERRED_AWAIT_STARTED:
            return replace(node, awaiting_deferred=_as_text(event.get('deferred_id')))
        return replace(node, awaiting_deferred=None)


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return value is True or value == 1


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value)
    return None


def _as_text(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)
