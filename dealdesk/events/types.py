"""
Event type definitions.

All events are frozen dataclasses with timestamp last. The engine emits
them only after the corresponding write has been committed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from dealdesk.time import utc_now


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ============================================================================
# LIFECYCLE EVENTS
# ============================================================================

@dataclass(frozen=True)
class TransitionEvent:
    """
    One committed change to a transaction.

    from_state == to_state for per-party writes that do not move the
    macro state (e.g. the first photo upload). from_state is None for the
    proposal that created the record. automatic marks sub-transitions the
    engine derived from aggregate readiness rather than a party request.
    """
    transaction_id: str
    kind: str
    action: str
    from_state: Optional[str]
    to_state: str
    actor_id: str
    initiator_id: str
    counterparty_id: str
    version: int
    automatic: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "TRANSITION",
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "action": self.action,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor_id": self.actor_id,
            "initiator_id": self.initiator_id,
            "counterparty_id": self.counterparty_id,
            "version": self.version,
            "automatic": self.automatic,
            "details": dict(self.details),
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class PaymentRequestedEvent:
    """A ship-to-buyer offer was accepted; the buyer owes payable amount."""
    transaction_id: str
    payer_id: str
    payee_id: str
    article_id: str
    amount: Decimal
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "PAYMENT_REQUESTED",
            "transaction_id": self.transaction_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "article_id": self.article_id,
            "amount": str(self.amount),
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class NoShowReportedEvent:
    """A party says the other did not show up to the meetup."""
    transaction_id: str
    reported_by_id: str
    reported_party_id: str
    kind: str = "offer"
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "NO_SHOW_REPORTED",
            "transaction_id": self.transaction_id,
            "reported_by_id": self.reported_by_id,
            "reported_party_id": self.reported_party_id,
            "kind": self.kind,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class RatingRecordedEvent:
    transaction_id: str
    rater_id: str
    ratee_id: str
    score: int
    comment: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "RATING_RECORDED",
            "transaction_id": self.transaction_id,
            "rater_id": self.rater_id,
            "ratee_id": self.ratee_id,
            "score": self.score,
            "comment": self.comment,
            "timestamp": _iso(self.timestamp),
        }


# ============================================================================
# SWEEPER EVENTS
# ============================================================================

@dataclass(frozen=True)
class FulfillmentStalledEvent:
    """Accepted transaction with no fulfillment progress for too long."""
    transaction_id: str
    kind: str
    state: str
    initiator_id: str
    counterparty_id: str
    last_activity: datetime
    idle_hours: float
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": "FULFILLMENT_STALLED",
            "transaction_id": self.transaction_id,
            "kind": self.kind,
            "state": self.state,
            "initiator_id": self.initiator_id,
            "counterparty_id": self.counterparty_id,
            "last_activity": _iso(self.last_activity),
            "idle_hours": round(self.idle_hours, 2),
            "timestamp": _iso(self.timestamp),
        }
