"""
Pytest configuration and shared fixtures for coroutine visualizer tests.
"""
import json
import pytest

from coroutine_viz.core.types import EngineConfig
from coroutine_viz.processors import EventNormalizer, HierarchyReducer
from coroutine_viz.processors.hierarchy_reducer import EMPTY_NODE_MAP


class EventFactory:
    """Builds wire-format records with increasing seq numbers."""

    def __init__(self, session_id="session-1"):
        self.session_id = session_id
        self.seq = 0

    def __call__(self, kind, coroutine_id, ts=0, seq=None, **fields):
        if seq is None:
            self.seq += 1
            seq = self.seq
        record = {
            "sessionId": self.session_id,
            "seq": seq,
            "tsNanos": ts,
            "kind": kind,
            "coroutineId": coroutine_id,
            "jobId": f"job-{coroutine_id}",
            "parentCoroutineId": None,
            "scopeId": "scope-1",
            "label": None,
        }
        record.update(fields)
        return record


@pytest.fixture
def make_record():
    """Factory for raw event records."""
    return EventFactory()


@pytest.fixture
def normalizer():
    return EventNormalizer()


@pytest.fixture
def reducer():
    return HierarchyReducer(EngineConfig())


@pytest.fixture
def fold(normalizer, reducer):
    """Normalize and reduce raw records into a node map."""
    def _fold(records, nodes=EMPTY_NODE_MAP):
        for record in records:
            nodes = reducer.apply(normalizer.to_event(record), nodes)
        return nodes
    return _fold


@pytest.fixture
def sample_records(make_record):
    """
    Parent with two children on different dispatchers.

    parent runs 0-100, suspends 100-150 (delay), body ends at 200 while
    child-b is still running, child-a completes at 180, child-b at 300,
    then the job completes.
    """
    r = make_record
    return [
        r("coroutine.created", "parent", ts=0, label="parent"),
        r("DispatcherSelected", "parent", ts=0, dispatcherId="d-default", dispatcherName="Default"),
        r("coroutine.started", "parent", ts=0),
        r("thread.assigned", "parent", ts=0, threadId=1, threadName="worker-1", dispatcherName="Default"),
        r("coroutine.created", "child-a", ts=10, parentCoroutineId="parent", label="child-a"),
        r("coroutine.created", "child-b", ts=20, parentCoroutineId="parent", label="child-b"),
        r("DispatcherSelected", "child-a", ts=30, dispatcherId="d-io", dispatcherName="IO"),
        r("coroutine.started", "child-a", ts=30),
        r("thread.assigned", "child-a", ts=30, threadId=2, threadName="io-1", dispatcherName="IO"),
        r("coroutine.suspended", "parent", ts=100,
          suspensionPoint={"function": "delay", "fileName": "Main.kt", "lineNumber": 12, "reason": "delay"}),
        r("coroutine.resumed", "parent", ts=150),
        r("thread.assigned", "parent", ts=150, threadId=1, threadName="worker-1", dispatcherName="Default"),
        r("DispatcherSelected", "child-b", ts=160, dispatcherId="d-default", dispatcherName="Default"),
        r("coroutine.started", "child-b", ts=160),
        r("coroutine.completed", "child-a", ts=180),
        r("coroutine.body-completed", "parent", ts=200),
        r("coroutine.completed", "child-b", ts=300),
        r("JobStateChanged", "parent", ts=310, isActive=False, isCompleted=True, isCancelled=False, childrenCount=0),
    ]


@pytest.fixture
def event_log_file(tmp_path, sample_records):
    """Event log as a JSON object with an events array."""
    path = tmp_path / "events.json"
    with open(path, "w") as f:
        json.dump({"events": sample_records}, f)
    return str(path)


@pytest.fixture
def event_lines_file(tmp_path, sample_records):
    """Event log as newline-delimited JSON, with a blank and a broken line."""
    path = tmp_path / "events.jsonl"
    with open(path, "w") as f:
        for record in sample_records:
            f.write(json.dumps(record) + "\n")
        f.write("\n")
        f.write("{not json\n")
    return str(path)
