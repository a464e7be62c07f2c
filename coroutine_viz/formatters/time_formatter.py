"""
Time formatting utilities for human-readable output.
"""


def format_time(ms: float) -> str:
    """
    Format time in milliseconds to a human-readable string.

    Args:
        ms: Time in milliseconds

    Returns:
        Formatted time string (e.g., "123.45 ms", "2.34 s", "1m 30.50s")
    """
    if ms < 1000:
        return f"{ms:.2f} ms"
    elif ms < 60000:
        return f"{ms/1000:.2f} s"
    else:
        minutes = int(ms / 60000)
        seconds = (ms % 60000) / 1000
        return f"{minutes}m {seconds:.2f}s"


def format_duration(nanos: int) -> str:
    """
    Format a duration in nanoseconds.

    Sub-millisecond durations are shown in microseconds, everything else
    goes through format_time.

    Args:
        nanos: Duration in nanoseconds

    Returns:
        Formatted time string (e.g., "850 µs", "12.50 ms", "2.34 s")
    """
    if nanos is None:
        return "-"
    if nanos < 1_000_000:
        return f"{nanos / 1000:.0f} µs"
    return format_time(nanos / 1_000_000.0)


def format_percent(value: float) -> str:
    """Format a percentage with one decimal (e.g., "75.0%")."""
    return f"{value:.1f}%"
