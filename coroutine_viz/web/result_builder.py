"""
Result builder for preparing session data for the web UI and JSON export.
"""

from collections import defaultdict
from typing import Any, Dict, List

from ..formatters import format_duration, format_percent
from ..processors import TreeProjector


def prepare_results(session, include_timelines: bool = True) -> Dict[str, Any]:
    """
    Prepare a session's reconstructed state for JSON serialization.

    Args:
        session: CoroutineSession instance
        include_timelines: If True, adds a per-coroutine timing summary

    Returns:
        Dictionary with summary, hierarchy, tree, stats, thread activity and
        (optionally) coroutine timings
    """
    snapshot = session.snapshot()
    stats = session.stats()

    coroutines: List[Dict[str, Any]] = []
    if include_timelines:
        for coroutine_id, timeline in session.timelines().items():
            coroutines.append({
                'coroutineId': coroutine_id,
                'name': timeline.name,
                'state': timeline.state,
                'totalDuration': timeline.total_duration,
                'totalDurationFormatted': format_duration(timeline.total_duration),
                'activeTime': timeline.active_time,
                'suspendedTime': timeline.suspended_time,
                'activePercent': timeline.active_percent,
                'activePercentFormatted': format_percent(timeline.active_percent),
                'suspendedPercent': timeline.suspended_percent,
                'suspendedPercentFormatted': format_percent(timeline.suspended_percent),
                'suspensionCount': timeline.suspension_count,
            })
        coroutines.sort(key=lambda x: -x['totalDuration'])

    # Failures are grouped by root so a UI can show what a cancellation reached
    failures_by_root = defaultdict(list)
    for node in snapshot.values():
        if node.failure_propagates:
            root_id = node.id
            seen = {root_id}
            parent_id = node.parent_id
            while parent_id in snapshot and parent_id not in seen:
                root_id = parent_id
                seen.add(root_id)
                parent_id = snapshot[root_id].parent_id
            failures_by_root[root_id].append({
                'coroutineId': node.id,
                'name': node.name,
                'cause': node.failure_cause,
                'parentId': node.parent_id,
            })

    summary = session.summary()
    summary['avgActiveTimeFormatted'] = format_duration(int(stats['avg_active_time']))
    summary['avgSuspendedTimeFormatted'] = format_duration(int(stats['avg_suspended_time']))

    return {
        'summary': summary,
        'hierarchy': [node.to_dict() for node in snapshot.values()],
        'tree': TreeProjector.tree_to_dict(TreeProjector.to_tree(snapshot)),
        'stats': stats,
        'threads': session.thread_activity(),
        'coroutines': coroutines,
        'failures': dict(failures_by_root),
    }
