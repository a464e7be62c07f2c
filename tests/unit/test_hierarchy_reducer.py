"""
Unit tests for coroutine_viz.processors.hierarchy_reducer module.
"""
import pytest
from coroutine_viz.core.types import CoroutineState, EngineConfig, SeenSeqs
from coroutine_viz.processors import HierarchyReducer
from coroutine_viz.processors.hierarchy_reducer import EMPTY_NODE_MAP


class TestCreated:
    """Tests for coroutine.created handling."""

    def test_root_created(self, fold, make_record):
        nodes = fold([make_record("coroutine.created", "root", ts=5, label="main")])
        node = nodes["root"]
        assert node.state == CoroutineState.CREATED
        assert node.parent_id is None
        assert node.label == "main"
        assert node.job_id == "job-root"
        assert node.scope_id == "scope-1"
        assert node.created_at == 5

    def test_child_appended_in_arrival_order(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "p"),
            make_record("coroutine.created", "b", parentCoroutineId="p"),
            make_record("coroutine.created", "a", parentCoroutineId="p"),
        ])
        assert nodes["p"].children == ("b", "a")
        assert nodes["p"].active_children_ids == frozenset({"a", "b"})
        assert nodes["p"].active_children_count == 2

    def test_parent_id_is_immutable(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c", parentCoroutineId="p1"),
            make_record("coroutine.created", "c", parentCoroutineId="p2"),
        ])
        assert nodes["c"].parent_id == "p1"

    def test_self_parent_becomes_root(self, fold, make_record):
        nodes = fold([make_record("coroutine.created", "c", parentCoroutineId="c")])
        assert nodes["c"].parent_id is None
        assert nodes["c"].children == ()

    def test_created_after_lazy_creation_fills_in_details(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "p"),
            make_record("coroutine.started", "c", ts=50),
            make_record("coroutine.created", "c", ts=40, parentCoroutineId="p", label="late"),
        ])
        node = nodes["c"]
        assert node.state == CoroutineState.ACTIVE
        assert node.parent_id == "p"
        assert node.label == "late"
        assert nodes["p"].children == ("c",)


class TestDefensiveCreation:
    """Events for unseen ids and unresolved parents."""

    def test_resumed_on_unseen_id_creates_node(self, fold, make_record):
        nodes = fold([make_record("coroutine.resumed", "ghost", ts=10)])
        assert nodes["ghost"].state == CoroutineState.ACTIVE
        assert nodes["ghost"].declared is False

    def test_unresolved_parent_keeps_node_as_root(self, fold, make_record):
        nodes = fold([make_record("coroutine.created", "c", parentCoroutineId="missing")])
        assert "c" in nodes
        assert nodes["c"].parent_id == "missing"
        assert "missing" not in nodes

    def test_late_parent_adopts_waiting_children(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c1", parentCoroutineId="p"),
            make_record("coroutine.created", "c2", parentCoroutineId="p"),
            make_record("coroutine.created", "p"),
        ])
        assert nodes["p"].children == ("c1", "c2")

    def test_lazily_created_parent_adopts_children(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c1", parentCoroutineId="p"),
            make_record("coroutine.started", "p"),
        ])
        assert nodes["p"].children == ("c1",)


class TestPurity:
    """apply never mutates its input."""

    def test_input_map_unchanged(self, reducer, normalizer, make_record):
        before = reducer.apply(normalizer.to_event(make_record("coroutine.created", "c")))
        after = reducer.apply(normalizer.to_event(make_record("coroutine.started", "c")), before)
        assert before["c"].state == CoroutineState.CREATED
        assert after["c"].state == CoroutineState.ACTIVE
        assert after is not before

    def test_returned_map_is_read_only(self, reducer, normalizer, make_record):
        nodes = reducer.apply(normalizer.to_event(make_record("coroutine.created", "c")))
        with pytest.raises(TypeError):
            nodes["c"] = None

    def test_none_event_is_ignored(self, reducer):
        assert reducer.apply(None, EMPTY_NODE_MAP) is EMPTY_NODE_MAP

    def test_unknown_kind_is_a_no_op(self, fold, make_record):
        nodes = fold([make_record("coroutine.created", "c")])
        after = fold([make_record("MutexLockAcquired", "c")], nodes)
        assert after is nodes

    def test_unknown_kind_does_not_create_nodes(self, fold, make_record):
        assert len(fold([make_record("SemaphorePermitAcquired", "c")])) == 0


class TestIdempotence:
    """Duplicate delivery of the same seq."""

    def test_duplicate_seq_yields_identical_map(self, fold, make_record):
        created = make_record("coroutine.created", "c", ts=0)
        started = make_record("coroutine.started", "c", ts=10)
        suspended = make_record("coroutine.suspended", "c", ts=40,
                                suspensionPoint={"function": "delay", "reason": "delay"})
        resumed = make_record("coroutine.resumed", "c", ts=60)

        once = fold([created, started, suspended, resumed])
        twice = fold([created, started, suspended, suspended, resumed, resumed])

        assert dict(once) == dict(twice)
        assert twice["c"].suspended_time == 20
        assert len(twice["c"].suspension_points) == 1

    def test_reapplying_returns_same_reference(self, fold, make_record):
        record = make_record("coroutine.created", "c")
        nodes = fold([record])
        assert fold([record], nodes) is nodes

    def test_duplicate_child_creation_does_not_double_link(self, fold, make_record):
        child = make_record("coroutine.created", "c", parentCoroutineId="p")
        nodes = fold([make_record("coroutine.created", "p"), child, child])
        assert nodes["p"].children == ("c",)


class TestOrderTolerance:
    """Parent/child creation order does not change the hierarchy."""

    def test_child_before_parent_converges(self, fold, make_record):
        parent = make_record("coroutine.created", "P", ts=0)
        child = make_record("coroutine.created", "C", ts=5, parentCoroutineId="P")

        forward = fold([parent, child])
        reverse = fold([child, parent])

        assert dict(forward) == dict(reverse)
        assert reverse["P"].children == ("C",)


class TestStateTransitions:
    """Running, suspension and terminal transitions."""

    def test_started_suspended_resumed(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c", ts=0),
            make_record("coroutine.started", "c", ts=0),
            make_record("coroutine.suspended", "c", ts=100,
                        suspensionPoint={"function": "delay", "reason": "delay"}),
        ])
        assert nodes["c"].state == CoroutineState.SUSPENDED
        assert nodes["c"].current_suspension.function == "delay"

        nodes = fold([make_record("coroutine.resumed", "c", ts=150)], nodes)
        assert nodes["c"].state == CoroutineState.ACTIVE
        assert nodes["c"].current_suspension is None
        assert nodes["c"].suspension_points[0].reason == "delay"

    def test_time_accumulators(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c", ts=0),
            make_record("coroutine.started", "c", ts=0),
            make_record("coroutine.suspended", "c", ts=100),
            make_record("coroutine.resumed", "c", ts=150),
            make_record("coroutine.completed", "c", ts=200),
        ])
        assert nodes["c"].active_time == 150
        assert nodes["c"].suspended_time == 50
        assert nodes["c"].completed_at == 200

    def test_out_of_order_timestamp_counts_as_zero(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.started", "c", ts=100),
            make_record("coroutine.suspended", "c", ts=50),
            make_record("coroutine.resumed", "c", ts=120),
        ])
        assert nodes["c"].active_time == 0
        assert nodes["c"].suspended_time == 20

    @pytest.mark.parametrize("kind,state", [
        ("coroutine.completed", CoroutineState.COMPLETED),
        ("coroutine.cancelled", CoroutineState.CANCELLED),
        ("coroutine.failed", CoroutineState.FAILED),
    ])
    def test_terminal_events(self, fold, make_record, kind, state):
        nodes = fold([
            make_record("coroutine.created", "p"),
            make_record("coroutine.created", "c", parentCoroutineId="p"),
            make_record("coroutine.started", "p", ts=0),
            make_record(kind, "p", ts=90),
        ])
        assert nodes["p"].state == state
        assert nodes["p"].completed_at == 90
        assert nodes["p"].active_children_ids == frozenset()
        assert nodes["p"].active_children_count == 0

    def test_failed_records_propagation_and_cause(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c"),
            make_record("coroutine.failed", "c", ts=10, exceptionType="IllegalStateException"),
        ])
        assert nodes["c"].failure_propagates is True
        assert nodes["c"].failure_cause == "IllegalStateException"

    def test_completed_child_leaves_parent_active_set(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "p"),
            make_record("coroutine.created", "a", parentCoroutineId="p"),
            make_record("coroutine.created", "b", parentCoroutineId="p"),
            make_record("coroutine.completed", "a", ts=10),
        ])
        assert nodes["p"].active_children_ids == frozenset({"b"})
        assert nodes["p"].active_children_count == 1


class TestMonotonicTerminality:
    """Terminal states never regress."""

    @pytest.mark.parametrize("terminal", ["coroutine.completed", "coroutine.cancelled", "coroutine.failed"])
    def test_no_event_leaves_terminal_state(self, fold, make_record, terminal):
        nodes = fold([
            make_record("coroutine.created", "c"),
            make_record("coroutine.started", "c", ts=1),
            make_record(terminal, "c", ts=2),
        ])
        expected = nodes["c"].state

        nodes = fold([
            make_record("coroutine.started", "c", ts=3),
            make_record("coroutine.resumed", "c", ts=4),
            make_record("coroutine.suspended", "c", ts=5),
            make_record("coroutine.body-completed", "c", ts=6),
            make_record("WaitingForChildren", "c", ts=7, activeChildrenIds=["x"], activeChildrenCount=1),
            make_record("JobStateChanged", "c", ts=8, isActive=True, isCompleted=False,
                        isCancelled=False, childrenCount=0),
            make_record("coroutine.cancelled", "c", ts=9),
            make_record("coroutine.completed", "c", ts=10),
        ], nodes)

        assert nodes["c"].state == expected
        assert nodes["c"].completed_at == 2

    def test_thread_not_assigned_after_termination(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.completed", "c", ts=2),
            make_record("thread.assigned", "c", ts=3, threadId=4, threadName="worker-4"),
        ])
        assert nodes["c"].current_thread_id is None


class TestWaitingForChildren:
    """Job-vs-coroutine completion."""

    def test_body_completed_with_running_children(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("coroutine.created", "B", parentCoroutineId="A"),
            make_record("coroutine.created", "C", parentCoroutineId="A"),
            make_record("coroutine.body-completed", "A", ts=10),
        ])
        assert nodes["A"].state == CoroutineState.WAITING_FOR_CHILDREN
        assert nodes["A"].body_completed is True
        assert nodes["A"].active_children_ids == frozenset({"B", "C"})

    def test_body_completed_before_children_created(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("coroutine.started", "A"),
            make_record("coroutine.body-completed", "A", ts=10),
        ])
        assert nodes["A"].state == CoroutineState.ACTIVE

        nodes = fold([
            make_record("coroutine.created", "B", ts=11, parentCoroutineId="A"),
            make_record("coroutine.created", "C", ts=12, parentCoroutineId="A"),
        ], nodes)
        assert nodes["A"].state == CoroutineState.WAITING_FOR_CHILDREN

        nodes = fold([
            make_record("coroutine.completed", "B", ts=20),
            make_record("coroutine.completed", "C", ts=30),
        ], nodes)
        assert nodes["A"].state == CoroutineState.WAITING_FOR_CHILDREN
        assert nodes["A"].active_children_count == 0

        nodes = fold([
            make_record("JobStateChanged", "A", ts=31, isActive=False, isCompleted=True,
                        isCancelled=False, childrenCount=0),
        ], nodes)
        assert nodes["A"].state == CoroutineState.COMPLETED
        assert nodes["A"].completed_at == 31

    def test_body_completed_without_running_children_keeps_state(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("coroutine.started", "A"),
            make_record("coroutine.created", "B", parentCoroutineId="A"),
            make_record("coroutine.completed", "B"),
            make_record("coroutine.body-completed", "A"),
        ])
        assert nodes["A"].state == CoroutineState.ACTIVE

    def test_inference_can_be_disabled(self, normalizer, make_record):
        reducer = HierarchyReducer(EngineConfig(infer_waiting_from_children=False))
        nodes = reducer.apply_all(normalizer.to_event(r) for r in [
            make_record("coroutine.created", "A"),
            make_record("coroutine.started", "A"),
            make_record("coroutine.created", "B", parentCoroutineId="A"),
            make_record("coroutine.body-completed", "A"),
        ])
        assert nodes["A"].state == CoroutineState.ACTIVE

    def test_explicit_payload_overrides_inferred_set(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("coroutine.created", "B", parentCoroutineId="A"),
            make_record("coroutine.created", "C", parentCoroutineId="A"),
            make_record("coroutine.body-completed", "A"),
            make_record("WaitingForChildren", "A", activeChildrenIds=["C"], activeChildrenCount=1),
        ])
        assert nodes["A"].active_children_ids == frozenset({"C"})
        assert nodes["A"].active_children_count == 1

        # A later body-completed does not overwrite the explicit set
        nodes = fold([make_record("coroutine.body-completed", "A")], nodes)
        assert nodes["A"].active_children_ids == frozenset({"C"})

    def test_explicit_payload_ids_win_over_disagreeing_count(self, fold, make_record):
        nodes = fold([
            make_record("WaitingForChildren", "A", activeChildrenIds=["B", "C"], activeChildrenCount=5),
        ])
        assert nodes["A"].state == CoroutineState.WAITING_FOR_CHILDREN
        assert nodes["A"].active_children_count == 2

    def test_explicit_payload_count_only(self, fold, make_record):
        nodes = fold([make_record("WaitingForChildren", "A", activeChildrenCount=3)])
        assert nodes["A"].active_children_ids is None
        assert nodes["A"].active_children_count == 3

    def test_count_only_set_decrements_when_child_finishes(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("coroutine.created", "B", parentCoroutineId="A"),
            make_record("coroutine.created", "C", parentCoroutineId="A"),
            make_record("WaitingForChildren", "A", activeChildrenCount=2),
            make_record("coroutine.completed", "B"),
        ])
        assert nodes["A"].active_children_ids is None
        assert nodes["A"].active_children_count == 1

        nodes = fold([
            make_record("coroutine.cancelled", "C"),
            make_record("coroutine.failed", "B"),
        ], nodes)
        assert nodes["A"].active_children_count == 0


class TestJobStateChanged:
    """Job flag priority."""

    @pytest.mark.parametrize("flags,children,expected", [
        ((True, True, True), 3, CoroutineState.CANCELLED),
        ((True, True, False), 3, CoroutineState.COMPLETED),
        ((True, False, False), 2, CoroutineState.WAITING_FOR_CHILDREN),
        ((True, False, False), 0, CoroutineState.ACTIVE),
        ((False, False, False), 2, None),
    ])
    def test_derive_job_state(self, flags, children, expected):
        is_active, is_completed, is_cancelled = flags
        assert HierarchyReducer.derive_job_state(is_active, is_completed, is_cancelled, children) == expected

    def test_job_state_overrides_body_completed_inference(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("coroutine.created", "B", parentCoroutineId="A"),
            make_record("coroutine.body-completed", "A"),
            make_record("JobStateChanged", "A", isActive=True, isCompleted=False,
                        isCancelled=False, childrenCount=0),
        ])
        assert nodes["A"].state == CoroutineState.ACTIVE

    def test_waiting_from_job_state_sets_count(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("JobStateChanged", "A", isActive=True, isCompleted=False,
                        isCancelled=False, childrenCount=2),
        ])
        assert nodes["A"].state == CoroutineState.WAITING_FOR_CHILDREN
        assert nodes["A"].active_children_count == 2
        assert nodes["A"].active_children_ids is None

    def test_string_flags(self, fold, make_record):
        nodes = fold([
            make_record("JobStateChanged", "A", isActive="false", isCompleted="true",
                        isCancelled="false", childrenCount="0"),
        ])
        assert nodes["A"].state == CoroutineState.COMPLETED

    def test_no_flags_keeps_state(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "A"),
            make_record("JobStateChanged", "A"),
        ])
        assert nodes["A"].state == CoroutineState.CREATED


class TestFieldUpdates:
    """Thread, dispatcher, cancellation, join and deferred events."""

    def test_thread_and_dispatcher(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c"),
            make_record("DispatcherSelected", "c", dispatcherId="d1", dispatcherName="IO"),
            make_record("coroutine.started", "c"),
            make_record("thread.assigned", "c", threadId=7, threadName="io-7"),
        ])
        node = nodes["c"]
        assert node.state == CoroutineState.ACTIVE
        assert node.dispatcher_id == "d1"
        assert node.dispatcher_name == "IO"
        assert node.current_thread_id == 7
        assert node.current_thread_name == "io-7"

    def test_thread_cleared_on_suspension(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.started", "c"),
            make_record("thread.assigned", "c", threadId=7, threadName="io-7"),
            make_record("coroutine.suspended", "c"),
        ])
        assert nodes["c"].current_thread_id is None
        assert nodes["c"].current_thread_name is None

    def test_dispatcher_selected_does_not_change_state(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c"),
            make_record("DispatcherSelected", "c", dispatcherId="d1", dispatcherName="Default"),
        ])
        assert nodes["c"].state == CoroutineState.CREATED

    def test_cancellation_requested(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.started", "c"),
            make_record("JobCancellationRequested", "c", requestedBy="parent", cause="timeout"),
        ])
        assert nodes["c"].cancellation_requested is True
        assert nodes["c"].cancellation_requested_by == "parent"
        assert nodes["c"].cancellation_cause == "timeout"
        assert nodes["c"].state == CoroutineState.ACTIVE

    def test_join_requested_and_completed(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "c"),
            make_record("JobJoinRequested", "c", waitingCoroutineId="p"),
        ])
        assert nodes["c"].joiners == frozenset({"p"})

        nodes = fold([make_record("JobJoinCompleted", "c", waitingCoroutineId="p")], nodes)
        assert nodes["c"].joiners == frozenset()

    def test_deferred_events(self, fold, make_record):
        nodes = fold([
            make_record("coroutine.created", "producer"),
            make_record("coroutine.created", "consumer"),
            make_record("DeferredAwaitStarted", "producer", deferredId="d1", awaitingCoroutineId="consumer"),
        ])
        assert nodes["consumer"].awaiting_deferred == "d1"

        nodes = fold([
            make_record("DeferredValueAvailable", "producer", deferredId="d1"),
            make_record("DeferredAwaitCompleted", "producer", deferredId="d1", awaitingCoroutineId="consumer"),
        ], nodes)
        assert nodes["producer"].deferred_value_available is True
        assert nodes["consumer"].awaiting_deferred is None


class TestConfig:
    """EngineConfig effects on reduction."""

    def test_suspension_points_can_be_disabled(self, normalizer, make_record):
        reducer = HierarchyReducer(EngineConfig(record_suspension_points=False))
        nodes = reducer.apply(normalizer.to_event(make_record(
            "coroutine.suspended", "c", suspensionPoint={"function": "delay", "reason": "delay"})))
        assert nodes["c"].suspension_points == ()

    def test_suspension_point_cap(self, normalizer, make_record):
        reducer = HierarchyReducer(EngineConfig(max_suspension_points=2))
        records = []
        for i in range(4):
            records.append(make_record("coroutine.suspended", "c", ts=i * 10,
                                       suspensionPoint={"function": f"f{i}", "reason": "delay"}))
            records.append(make_record("coroutine.resumed", "c", ts=i * 10 + 5))
        nodes = reducer.apply_all(normalizer.to_event(r) for r in records)
        assert [p.function for p in nodes["c"].suspension_points] == ["f2", "f3"]

    def test_negative_cap_rejected(self):
        with pytest.raises(ValueError):
            EngineConfig(max_suspension_points=-1)


def test_malformed_payloads_never_raise(fold, make_record):
    nodes = fold([
        make_record("coroutine.created", "c", parentCoroutineId=123),
        make_record("WaitingForChildren", "c", activeChildrenIds="not-a-list", activeChildrenCount="x"),
        make_record("JobStateChanged", "c", isActive={"a": 1}, childrenCount=[1]),
        make_record("thread.assigned", "c", threadId="main", threadName=None),
        make_record("coroutine.suspended", "c", suspensionPoint="delay"),
    ])
    assert nodes["c"].state == CoroutineState.SUSPENDED
    assert nodes["c"].parent_id == "123"


class TestSeenSeqs:
    """Persistent seq set used for per-node de-duplication."""

    def test_add_to_newest_version_shares_storage(self):
        seen = SeenSeqs()
        first = seen.add(1)
        second = first.add(2)
        assert second._index is first._index
        assert 2 not in first
        assert 1 in second and 2 in second
        assert len(second) == 2

    def test_older_version_forks_without_seeing_newer_seqs(self):
        base = SeenSeqs().add(1)
        newer = base.add(2)
        fork = base.add(3)
        assert 3 not in newer
        assert 2 not in fork
        assert set(fork) == {1, 3}
        assert set(newer) == {1, 2}

    def test_long_stream_keeps_one_shared_index(self, reducer, normalizer, make_record):
        nodes = reducer.apply(normalizer.to_event(make_record("coroutine.started", "c", ts=0)))
        index = nodes["c"].seen_seqs._index
        for i in range(1, 10001):
            kind = "coroutine.suspended" if i % 2 else "coroutine.resumed"
            nodes = reducer.apply(normalizer.to_event(make_record(kind, "c", ts=i)), nodes)
        assert nodes["c"].seen_seqs._index is index
        assert len(nodes["c"].seen_seqs) == 10001
        assert nodes["c"].active_time + nodes["c"].suspended_time == 10000

    def test_reapplying_to_older_snapshot_is_not_a_duplicate(self, fold, make_record):
        base = fold([make_record("coroutine.created", "c", ts=0)])
        started = make_record("coroutine.started", "c", ts=5)
        newer = fold([started], base)
        replayed = fold([started], base)
        assert replayed is not base
        assert replayed["c"].state == newer["c"].state == CoroutineState.ACTIVE
