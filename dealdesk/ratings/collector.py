"""
Rating collector: one 1-5 score per party per completed transaction.

Ratings ride on the transaction record (ratings map keyed by PartyRole)
and never change the lifecycle state. Collecting is idempotent: a second
rating from the same party returns the stored one untouched.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional

from dealdesk.logging import get_logger, LogStream
from dealdesk.state.authority import Action, Decision, TransitionAuthority
from dealdesk.state.errors import InvalidRequestError, InvalidTransitionError
from dealdesk.state.models import Rating, Transaction
from dealdesk.time import ensure_utc

MIN_SCORE = 1
MAX_SCORE = 5
MAX_COMMENT_LENGTH = 1000


@dataclass(frozen=True)
class RatingSummary:
    """Aggregate of the ratings a user received."""
    user_id: str
    count: int = 0
    average: Optional[float] = None
    distribution: Dict[int, int] = field(default_factory=dict)


class RatingCollector:
    """
    USAGE:
        collector = RatingCollector(authority)
        decision = collector.collect(swap, user_id, 5, now)
        if not decision.noop:
            store.compare_and_set(decision.record, decision.expected_version)
        rating = decision.result
    """

    def __init__(self, authority: TransitionAuthority):
        self.authority = authority
        self.logger = get_logger(LogStream.RATINGS)

    @staticmethod
    def validate_score(score) -> int:
        if isinstance(score, bool) or not isinstance(score, int):
            raise InvalidRequestError(f"score must be an integer, got {score!r}", attempted="rate", reason="invalid_score")
        if not MIN_SCORE <= score <= MAX_SCORE:
            raise InvalidRequestError(
                f"score must be between {MIN_SCORE} and {MAX_SCORE}, got {score}",
                attempted="rate",
                reason="score_out_of_range",
            )
        return score

    def collect(
        self,
        record: Transaction,
        rater_id: str,
        score,
        now: datetime,
        comment: Optional[str] = None,
    ) -> Decision:
        """
        Decide a rating.

        Raises:
            UnauthorizedActorError: rater is not a party
            InvalidRequestError: score not an integer in 1..5, comment too long
            InvalidTransitionError: transaction not completed
        """
        self.authority.check(record, Action.RATE, rater_id, now)
        score = self.validate_score(score)
        if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
            raise InvalidRequestError("comment too long", attempted="rate", reason="comment_too_long")

        if not record.is_completed:
            raise InvalidTransitionError(
                "Only completed transactions can be rated",
                transaction_id=record.transaction_id,
                current_state=record.state.value,
                attempted=Action.RATE.value,
                actor_id=rater_id,
                reason="not_completed",
            )

        role = record.role_of(rater_id)
        existing = record.ratings.get(role)
        if existing is not None:
            self.logger.debug("Rating already recorded", extra={
                "transaction_id": record.transaction_id,
                "rater_id": rater_id,
                "score": existing.score,
            })
            return Decision(
                record=record,
                action=Action.RATE,
                actor_id=rater_id,
                from_state=record.state,
                to_state=record.state,
                expected_version=record.version,
                noop=True,
                result=existing,
            )

        rating = Rating(score=score, rated_at=ensure_utc(now), comment=comment)
        new = record.clone()
        new.ratings[role] = rating

        self.logger.info(f"Rating {score} on {record.transaction_id}", extra={
            "transaction_id": record.transaction_id,
            "rater_id": rater_id,
            "ratee_id": record.party_id(role.other()),
            "score": score,
        })
        return Decision(
            record=new,
            action=Action.RATE,
            actor_id=rater_id,
            from_state=record.state,
            to_state=record.state,
            expected_version=record.version,
            details={"score": score, "ratee_id": record.party_id(role.other())},
            result=rating,
        )

    @staticmethod
    def summary_for(user_id: str, records: Iterable[Transaction]) -> RatingSummary:
        """Ratings *user_id* received across *records*."""
        scores = []
        for record in records:
            role = record.role_of(user_id)
            if role is None:
                continue
            received = record.ratings.get(role.other())
            if received is not None:
                scores.append(received.score)

        if not scores:
            return RatingSummary(user_id=user_id)

        distribution = {value: scores.count(value) for value in range(MIN_SCORE, MAX_SCORE + 1)}
        return RatingSummary(
            user_id=user_id,
            count=len(scores),
            average=round(sum(scores) / len(scores), 2),
            distribution=distribution,
        )
