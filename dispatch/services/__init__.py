"""
Services package for the dispatch core.
"""

from .availability import is_eligible, is_within_working_hours
from .coordinator import DispatchCoordinator, get_coordinator, reset_coordinator
from .geo import haversine_km
from .lifecycle import TRANSITIONS, TransitionDetails, transition
from .matching import MatchEngine
from .registry import PartyRegistry
from .reputation import RATING_CATEGORIES, ReputationAggregator

__all__ = [
    "DispatchCoordinator",
    "MatchEngine",
    "PartyRegistry",
    "RATING_CATEGORIES",
    "ReputationAggregator",
    "TRANSITIONS",
    "TransitionDetails",
    "get_coordinator",
    "haversine_km",
    "is_eligible",
    "is_within_working_hours",
    "reset_coordinator",
    "transition",
]
