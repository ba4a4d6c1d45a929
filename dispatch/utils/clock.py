"""
Clock helpers

Services take a zero-argument ``clock`` callable so tests can pin "now".
"""

from datetime import datetime, timezone, tzinfo
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_time(moment: datetime, zone: tzinfo) -> datetime:
    """Wall-clock view of an instant in ``zone``; naive datetimes are taken as already local"""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(zone)


def round_half_up(value: float, places: int = 1) -> float:
    """Round like a calculator (2.25 -> 2.3), not like round() (2.25 -> 2.2)"""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
