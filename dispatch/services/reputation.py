"""
Reputation Aggregator

Keeps the rating aggregate of every courier and company in step with the
stream of immutable Rating records:
1. A rating is stored under the key (order_id, from_type); a second one for
   the same pair is rejected, never overwritten
2. The target's aggregate is recomputed from all of its ratings inside the
   target's own atomic update, so concurrent ratings cannot lose a write
3. Statistics (histogram, category averages, trailing window) are computed
   on demand and never stored
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from dispatch.errors import Conflict, NotFound, ValidationError
from dispatch.models.api import RatingStats, RecentRatingStats
from dispatch.models.domain import PartyType, Rating, RatingAggregate
from dispatch.store import Stores
from dispatch.store.base import RecordStore
from dispatch.utils.clock import Clock, round_half_up, utc_now
from dispatch.utils.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


# Category keys a party of each kind can be rated on
RATING_CATEGORIES: Dict[PartyType, Dict[str, str]] = {
    PartyType.COURIER: {
        "punctuality": "Arrived at the agreed time",
        "communication": "Communicated well during the delivery",
        "carefulness": "Handled the order with care",
        "politeness": "Was polite and courteous",
        "appearance": "Was well presented",
    },
    PartyType.COMPANY: {
        "order_accuracy": "Order was correct and complete",
        "packaging": "Product was well packed",
        "payment_process": "Payment was processed correctly",
        "support": "Company gave adequate support",
        "instructions": "Instructions were clear",
    },
}


def rating_key(order_id: UUID, from_type: PartyType) -> str:
    """Store key enforcing one rating per (order, rating side)"""
    return f"{order_id}:{from_type.value}"


def _is_score(value: Any) -> bool:
    # bool is an int subclass; True must not count as a 1-star rating
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 5


def _party_type(value: Union[PartyType, str], field: str) -> PartyType:
    try:
        return PartyType(value)
    except ValueError:
        raise ValidationError(f"{field} must be one of: company, courier") from None


def _average(scores: List[int]) -> float:
    if not scores:
        return 0.0
    return round_half_up(sum(scores) / len(scores), 1)


class ReputationAggregator:
    """Stores ratings and maintains the per-party rating aggregates"""

    def __init__(
        self,
        stores: Stores,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        self.stores = stores
        self.clock = clock or utc_now
        self.config = config or default_settings

    def _party_store(self, party_type: PartyType) -> RecordStore:
        if party_type == PartyType.COURIER:
            return self.stores.couriers
        return self.stores.companies

    def submit_rating(
        self,
        order_id: UUID,
        from_type: Union[PartyType, str],
        from_id: UUID,
        to_type: Union[PartyType, str],
        to_id: UUID,
        score: int,
        categories: Optional[Dict[str, int]] = None,
        comment: str = "",
    ) -> Rating:
        """
        Store one rating and refresh the target's aggregate.

        Args:
            order_id: Delivered order being rated
            from_type / from_id: Rating party
            to_type / to_id: Rated party
            score: Integer 1-5
            categories: Optional per-category integer scores 1-5, keyed by
                RATING_CATEGORIES of the rated party's kind
            comment: Free text

        Returns:
            The stored Rating

        Raises:
            ValidationError: Bad score, party kinds, category keys or scores, or a
                rating already exists for (order_id, from_type)
            NotFound: The rated party does not exist
        """
        from_type = _party_type(from_type, "from_type")
        to_type = _party_type(to_type, "to_type")
        if from_type == to_type:
            raise ValidationError("A party cannot rate a party of its own kind")
        if not _is_score(score):
            raise ValidationError("Score must be an integer between 1 and 5")

        categories = dict(categories or {})
        bad = sorted(name for name, value in categories.items() if not _is_score(value))
        if bad:
            raise ValidationError(f"Category scores must be integers between 1 and 5: {', '.join(bad)}")
        unknown = sorted(set(categories) - set(RATING_CATEGORIES[to_type]))
        if unknown:
            raise ValidationError(f"Unknown {to_type.value} rating categories: {', '.join(unknown)}")

        target_store = self._party_store(to_type)
        if target_store.get(str(to_id)) is None:
            raise NotFound(f"{to_type.value} {to_id} not found")

        rating = Rating(
            id=uuid.uuid4(),
            order_id=order_id,
            from_type=from_type,
            from_id=from_id,
            to_type=to_type,
            to_id=to_id,
            score=score,
            categories=categories,
            comment=comment or "",
            created_at=self.clock(),
        )

        try:
            self.stores.ratings.add(rating_key(order_id, from_type), rating)
        except Conflict as exc:
            raise ValidationError(
                f"Order {order_id} was already rated by the {from_type.value}"
            ) from exc

        aggregate = self._refresh_aggregate(to_id, to_type)
        logger.info(
            f"Rating {score}/5 from {from_type.value} {from_id} to {to_type.value} {to_id} "
            f"(order {order_id}); aggregate now {aggregate.average} over {aggregate.count}"
        )
        return rating

    def _refresh_aggregate(self, target_id: UUID, target_type: PartyType) -> RatingAggregate:
        """Recompute the target's aggregate from every stored rating, under its lock"""
        computed: Dict[str, RatingAggregate] = {}

        def mutator(party):
            scores = [r.score for r in self.ratings_for(target_id, target_type)]
            aggregate = RatingAggregate(average=_average(scores), count=len(scores))
            computed["aggregate"] = aggregate
            return party.model_copy(update={"rating": aggregate, "updated_at": self.clock()})

        self._party_store(target_type).update(str(target_id), mutator)
        return computed["aggregate"]

    def ratings_for(self, target_id: UUID, target_type: Union[PartyType, str]) -> List[Rating]:
        """Every rating targeting one party, oldest first"""
        target_type = _party_type(target_type, "target_type")
        ratings = self.stores.ratings.filter(
            lambda r: r.to_id == target_id and r.to_type == target_type
        )
        return sorted(ratings, key=lambda r: r.created_at)

    def stats_for(
        self,
        target_id: UUID,
        target_type: Union[PartyType, str],
        now: Optional[datetime] = None,
    ) -> RatingStats:
        """
        Rating statistics for one party.

        The ``recent`` block covers the trailing RECENT_RATINGS_WINDOW_DAYS
        counted back from ``now`` (the clock by default), so two calls on
        different days can disagree.
        """
        ratings = self.ratings_for(target_id, target_type)
        now = now or self.clock()
        window_days = self.config.RECENT_RATINGS_WINDOW_DAYS
        cutoff = now - timedelta(days=window_days)
        recent = [r for r in ratings if r.created_at >= cutoff]

        distribution = {star: 0 for star in range(1, 6)}
        for rating in ratings:
            distribution[rating.score] += 1

        return RatingStats(
            total=len(ratings),
            average=_average([r.score for r in ratings]),
            distribution=distribution,
            category_averages=self._category_averages(ratings),
            recent=RecentRatingStats(
                total=len(recent),
                average=_average([r.score for r in recent]),
                window_days=window_days,
            ),
        )

    @staticmethod
    def _category_averages(ratings: List[Rating]) -> Dict[str, float]:
        # A rating that omits a category does not count toward its denominator
        totals: Dict[str, int] = {}
        counts: Dict[str, int] = {}
        for rating in ratings:
            for name, value in rating.categories.items():
                totals[name] = totals.get(name, 0) + value
                counts[name] = counts.get(name, 0) + 1
        return {name: round_half_up(totals[name] / counts[name], 1) for name in totals}
