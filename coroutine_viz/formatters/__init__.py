"""Formatting and time arithmetic helpers."""

from .interval_merger import merge_intervals, busy_time, calculate_busy_times, calculate_utilization
from .time_formatter import format_time, format_duration, format_percent

__all__ = [
    "merge_intervals",
    "busy_time",
    "calculate_busy_times",
    "calculate_utilization",
    "format_time",
    "format_duration",
    "format_percent",
]
