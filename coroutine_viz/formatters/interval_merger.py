"""
Interval merging utility for calculating busy (wall-clock) time
from overlapping execution segments.
"""
from typing import Dict, Hashable, List, Tuple


def merge_intervals(intervals: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """
    Merge overlapping or touching intervals.

    Example:
        Input: [(0, 100), (50, 150), (200, 300)]
        Output: [(0, 150), (200, 300)]

    Args:
        intervals: List of (start_ns, end_ns) tuples in nanoseconds

    Returns:
        Sorted list of merged, non-overlapping intervals
    """
    # Empty and inverted intervals carry no time
    valid = sorted((s, e) for s, e in intervals if e > s)
    if not valid:
        return []

    merged = [valid[0]]
    for start, end in valid[1:]:
        last_start, last_end = merged[-1]
        if start <= last_end:
            merged[-1] = (last_start, max(last_end, end))
        else:
            merged.append((start, end))
    return merged


def busy_time(intervals: List[Tuple[int, int]]) -> int:
    """
    Total covered time after merging overlaps.

    Args:
        intervals: List of (start_ns, end_ns) tuples in nanoseconds

    Returns:
        Covered duration in nanoseconds
    """
    return sum(end - start for start, end in merge_intervals(intervals))


def calculate_busy_times(
    intervals_by_key: Dict[Hashable, List[Tuple[int, int]]]
) -> Dict[Hashable, int]:
    """
    Busy time in nanoseconds for each grouping key.

    Args:
        intervals_by_key: Dict mapping key -> list of (start_ns, end_ns)

    Returns:
        Dict mapping key -> busy time in nanoseconds
    """
    return {key: busy_time(intervals) for key, intervals in intervals_by_key.items()}


def calculate_utilization(busy_ns: int, window_ns: int) -> float:
    """
    Fraction of a time window spent busy, clamped to [0, 1].

    Args:
        busy_ns: Busy time in nanoseconds
        window_ns: Observed window in nanoseconds

    Returns:
        Utilization between 0.0 and 1.0 (0.0 for an empty window)
    """
    if window_ns <= 0:
        return 0.0
    return min(1.0, max(0.0, busy_ns / window_ns))
