"""
Availability gate: is a courier eligible to receive or accept work right now.

Pure functions of a courier record and an instant. The instant's own wall
clock decides the weekday and time of day, so callers convert "now" to the
configured TIMEZONE first (see ``dispatch.utils.clock.local_time``).

Window boundaries are inclusive on both ends at minute resolution: with a
08:00-18:00 window, 18:00:59 is still inside and 18:01 is not.
"""

from datetime import datetime

from dispatch.models.domain import Courier, Weekday, WorkingHours


def is_within_working_hours(working_hours: WorkingHours, now: datetime) -> bool:
    window = working_hours.window_for(Weekday.of(now))
    if not window.active:
        return False
    current = now.time().replace(second=0, microsecond=0, tzinfo=None)
    start = window.start.replace(second=0, microsecond=0, tzinfo=None)
    end = window.end.replace(second=0, microsecond=0, tzinfo=None)
    return start <= current <= end


def is_eligible(courier: Courier, now: datetime) -> bool:
    """True when the courier is active, available, verified and inside today's window."""
    if not courier.is_active or not courier.is_available or not courier.is_verified:
        return False
    return is_within_working_hours(courier.working_hours, now)
