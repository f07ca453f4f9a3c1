"""Naive linear extrapolation of the current trend to the critical level.

This is an escalation trigger, not a forecast: the result should never be
reported as a precise arrival time.
"""

from floodwatch.config import settings


def estimate(trend: float, current_level: float, critical_level: float | None = None) -> float | None:
    """Minutes until the critical level is reached, 0 if already there, None if not rising."""
    critical = critical_level if critical_level is not None else settings.critical_level_ft
    if trend <= 0:
        return None
    if current_level >= critical:
        return 0.0
    return (critical - current_level) / trend * 60
