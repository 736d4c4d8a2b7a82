"""
Transaction records: offers and swaps between two marketplace users.

ARCHITECTURE:
- Transaction is the shared base (parties, state tag, deadline, version,
  write-once timestamp trail, meetup confirmations, no-show reports, ratings)
- Offer: cash offer negotiated inside a chat conversation
- Swap: item-for-item exchange with optional cash top-up
- Per-party data lives in maps keyed by PartyRole; the state tag is the
  single source of truth for the lifecycle, the maps are plain data
- Records round-trip through to_dict()/Transaction.from_dict() (JSON-safe)

RULES:
1. Parties are distinct, non-empty and immutable
2. timestamps entries are written once and never cleared
3. exchange_mode is set at most once
4. Records are never deleted
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, TypeVar

from dealdesk.state.errors import InvalidRequestError
from dealdesk.time import ensure_utc, parse_timestamp

SYSTEM_ACTOR = "system"

T = TypeVar("T")


# ============================================================================
# ENUMS
# ============================================================================

class TransactionKind(str, Enum):
    OFFER = "offer"
    SWAP = "swap"


class PartyRole(str, Enum):
    """Position of a user within one transaction."""
    INITIATOR = "initiator"
    COUNTERPARTY = "counterparty"

    def other(self) -> "PartyRole":
        if self is PartyRole.INITIATOR:
            return PartyRole.COUNTERPARTY
        return PartyRole.INITIATOR


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COUNTER_PRICE = "counter_price"
    COUNTER_LOCATION = "counter_location"
    COUNTER_TIME = "counter_time"


OPEN_OFFER_STATES = frozenset({
    OfferStatus.PENDING,
    OfferStatus.COUNTER_PRICE,
    OfferStatus.COUNTER_LOCATION,
    OfferStatus.COUNTER_TIME,
})

COUNTER_STATES = frozenset({
    OfferStatus.COUNTER_PRICE,
    OfferStatus.COUNTER_LOCATION,
    OfferStatus.COUNTER_TIME,
})


class SwapStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    PHOTOS_PENDING = "photos_pending"
    SHIPPING = "shipping"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    DISPUTED = "disputed"


# Disputed has no outgoing transitions but still counts as active
CLOSED_SWAP_STATES = frozenset({
    SwapStatus.COMPLETED,
    SwapStatus.DECLINED,
    SwapStatus.CANCELLED,
    SwapStatus.EXPIRED,
})

FULFILLMENT_SWAP_STATES = frozenset({
    SwapStatus.ACCEPTED,
    SwapStatus.PHOTOS_PENDING,
    SwapStatus.SHIPPING,
})


class ExchangeMode(str, Enum):
    HAND_DELIVERY = "hand_delivery"
    SHIPPING = "shipping"


# ============================================================================
# HELPERS
# ============================================================================

def both_parties(mapping: Mapping[PartyRole, Any]) -> bool:
    """True when both roles have an entry in a per-party map."""
    return all(mapping.get(role) is not None for role in PartyRole)


def to_decimal(value: Any, name: str) -> Decimal:
    """Coerce an amount to Decimal; booleans and non-finite values are rejected."""
    if isinstance(value, bool) or value is None:
        raise InvalidRequestError(f"{name} must be a number", reason="invalid_amount")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidRequestError(f"{name} must be a number: {value!r}", reason="invalid_amount") from e
    if not result.is_finite():
        raise InvalidRequestError(f"{name} must be finite", reason="invalid_amount")
    return result


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _role_map_out(mapping: Mapping[PartyRole, Any], encode) -> Dict[str, Any]:
    return {role.value: encode(value) for role, value in mapping.items()}


def _role_map_in(data: Optional[Mapping[str, Any]], decode) -> Dict[PartyRole, Any]:
    return {PartyRole(key): decode(value) for key, value in (data or {}).items()}


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class MeetupDetails:
    """In-person handover proposal attached to an offer."""
    location: str
    date_time: Optional[datetime] = None
    proposed_by: PartyRole = PartyRole.INITIATOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "date_time": _dt(self.date_time),
            "proposed_by": self.proposed_by.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MeetupDetails":
        return cls(
            location=data["location"],
            date_time=parse_timestamp(data.get("date_time")),
            proposed_by=PartyRole(data.get("proposed_by", PartyRole.INITIATOR.value)),
        )


@dataclass(frozen=True)
class ItemSnapshot:
    """Article as it was when the swap was proposed."""
    article_id: str
    title: str = ""
    price: Optional[Decimal] = None
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "article_id": self.article_id,
            "title": self.title,
            "price": _dec(self.price),
            "image_url": self.image_url,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ItemSnapshot":
        price = data.get("price")
        return cls(
            article_id=data["article_id"],
            title=data.get("title", ""),
            price=Decimal(price) if price is not None else None,
            image_url=data.get("image_url"),
        )


@dataclass(frozen=True)
class CashTopUp:
    """Cash one party adds to balance a swap."""
    amount: Decimal
    payer_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": str(self.amount), "payer_id": self.payer_id}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CashTopUp":
        return cls(amount=Decimal(data["amount"]), payer_id=data["payer_id"])


@dataclass(frozen=True)
class PhotoProof:
    """Pre-shipment photos of the item one party is sending."""
    photo_urls: tuple
    uploaded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"photo_urls": list(self.photo_urls), "uploaded_at": _dt(self.uploaded_at)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PhotoProof":
        return cls(
            photo_urls=tuple(data.get("photo_urls", ())),
            uploaded_at=parse_timestamp(data["uploaded_at"]),
        )


@dataclass(frozen=True)
class Rating:
    score: int
    rated_at: datetime
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "rated_at": _dt(self.rated_at), "comment": self.comment}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Rating":
        return cls(
            score=int(data["score"]),
            rated_at=parse_timestamp(data["rated_at"]),
            comment=data.get("comment"),
        )


@dataclass(frozen=True)
class NoShowReport:
    reported_by: PartyRole
    reported_at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reported_by": self.reported_by.value,
            "reported_at": _dt(self.reported_at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NoShowReport":
        return cls(
            reported_by=PartyRole(data["reported_by"]),
            reported_at=parse_timestamp(data["reported_at"]),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class NegotiationEntry:
    """One step of an offer's negotiation trail (None = system)."""
    action: str
    by: Optional[PartyRole]
    at: datetime
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "by": self.by.value if self.by is not None else None,
            "at": _dt(self.at),
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NegotiationEntry":
        by = data.get("by")
        return cls(
            action=data["action"],
            by=PartyRole(by) if by is not None else None,
            at=parse_timestamp(data["at"]),
            previous_value=data.get("previous_value"),
            new_value=data.get("new_value"),
            note=data.get("note"),
        )


# ============================================================================
# TRANSACTION BASE
# ============================================================================

@dataclass
class Transaction:
    """Fields and behaviour shared by offers and swaps."""

    kind: ClassVar[TransactionKind]

    transaction_id: str
    initiator_id: str
    counterparty_id: str
    created_at: datetime
    state: Enum

    expires_at: Optional[datetime] = None
    version: int = 0
    updated_at: Optional[datetime] = None

    # name -> first time it happened; never overwritten
    timestamps: Dict[str, datetime] = field(default_factory=dict)

    meetup_confirmations: Dict[PartyRole, datetime] = field(default_factory=dict)
    no_show_reports: List[NoShowReport] = field(default_factory=list)
    ratings: Dict[PartyRole, Rating] = field(default_factory=dict)

    def __post_init__(self):
        if not self.transaction_id:
            raise InvalidRequestError("transaction_id is required", reason="missing_id")
        if not self.initiator_id or not self.counterparty_id:
            raise InvalidRequestError("both parties are required", reason="missing_party")
        if self.initiator_id == self.counterparty_id:
            raise InvalidRequestError(
                "initiator and counterparty must be different users",
                transaction_id=self.transaction_id,
                reason="same_party",
            )
        self.created_at = ensure_utc(self.created_at)
        if self.expires_at is not None:
            self.expires_at = ensure_utc(self.expires_at)

    # ------------------------------------------------------------------
    # Parties
    # ------------------------------------------------------------------

    @property
    def parties(self) -> tuple:
        return (self.initiator_id, self.counterparty_id)

    def role_of(self, user_id: str) -> Optional[PartyRole]:
        """Role of *user_id* in this transaction, None if not a party."""
        if user_id == self.initiator_id:
            return PartyRole.INITIATOR
        if user_id == self.counterparty_id:
            return PartyRole.COUNTERPARTY
        return None

    def party_id(self, role: PartyRole) -> str:
        return self.initiator_id if role is PartyRole.INITIATOR else self.counterparty_id

    def other_party(self, user_id: str) -> Optional[str]:
        role = self.role_of(user_id)
        return self.party_id(role.other()) if role is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stamp(self, name: str, at: datetime) -> None:
        """Record when *name* first happened (write-once)."""
        self.timestamps.setdefault(name, ensure_utc(at))

    def stamped(self, name: str) -> Optional[datetime]:
        return self.timestamps.get(name)

    @property
    def accepted_at(self) -> Optional[datetime]:
        return self.timestamps.get("accepted")

    @property
    def completed_at(self) -> Optional[datetime]:
        return self.timestamps.get("completed")

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def awaiting_response(self) -> bool:
        raise NotImplementedError

    @property
    def is_terminal(self) -> bool:
        """No further state transitions are possible."""
        raise NotImplementedError

    @property
    def is_active(self) -> bool:
        """Counts against the one-active-per-subject rule."""
        raise NotImplementedError

    @property
    def in_fulfillment(self) -> bool:
        raise NotImplementedError

    @property
    def subject_key(self) -> str:
        raise NotImplementedError

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.awaiting_response
            and self.expires_at is not None
            and ensure_utc(now) >= self.expires_at
        )

    def has_reported_no_show(self, role: PartyRole) -> bool:
        return any(r.reported_by is role for r in self.no_show_reports)

    def last_activity(self) -> datetime:
        """Most recent recorded event on the audit trail."""
        moments = [self.created_at]
        moments.extend(self.timestamps.values())
        moments.extend(self.meetup_confirmations.values())
        moments.extend(r.reported_at for r in self.no_show_reports)
        return max(moments)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def clone(self: T) -> T:
        return copy.deepcopy(self)

    def _base_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "transaction_id": self.transaction_id,
            "initiator_id": self.initiator_id,
            "counterparty_id": self.counterparty_id,
            "created_at": _dt(self.created_at),
            "state": self.state.value,
            "expires_at": _dt(self.expires_at),
            "version": self.version,
            "updated_at": _dt(self.updated_at),
            "timestamps": {k: _dt(v) for k, v in self.timestamps.items()},
            "meetup_confirmations": _role_map_out(self.meetup_confirmations, _dt),
            "no_show_reports": [r.to_dict() for r in self.no_show_reports],
            "ratings": _role_map_out(self.ratings, lambda r: r.to_dict()),
        }

    @staticmethod
    def _base_kwargs(data: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "transaction_id": data["transaction_id"],
            "initiator_id": data["initiator_id"],
            "counterparty_id": data["counterparty_id"],
            "created_at": parse_timestamp(data["created_at"]),
            "expires_at": parse_timestamp(data.get("expires_at")),
            "version": int(data.get("version", 0)),
            "updated_at": parse_timestamp(data.get("updated_at")),
            "timestamps": {k: parse_timestamp(v) for k, v in (data.get("timestamps") or {}).items()},
            "meetup_confirmations": _role_map_in(data.get("meetup_confirmations"), parse_timestamp),
            "no_show_reports": [NoShowReport.from_dict(r) for r in data.get("no_show_reports") or []],
            "ratings": _role_map_in(data.get("ratings"), Rating.from_dict),
        }

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Transaction":
        kind = TransactionKind(data["kind"])
        if kind is TransactionKind.OFFER:
            return Offer.from_dict(data)
        return Swap.from_dict(data)


# ============================================================================
# OFFER
# ============================================================================

@dataclass
class Offer(Transaction):
    """
    Cash offer on one article, negotiated in a chat conversation.

    The initiator is the buyer making the first proposal; the counterparty
    is the seller. Counters mutate the offer in place: last_proposed_by flips
    and the negotiation trail keeps every previous value.
    """

    kind: ClassVar[TransactionKind] = TransactionKind.OFFER

    state: OfferStatus = OfferStatus.PENDING
    article_id: str = ""
    amount: Decimal = Decimal("0")
    message: Optional[str] = None
    meetup: Optional[MeetupDetails] = None
    shipping_estimate: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    tracking_id: Optional[str] = None
    last_proposed_by: PartyRole = PartyRole.INITIATOR
    negotiation: List[NegotiationEntry] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        if not self.article_id:
            raise InvalidRequestError("article_id is required", reason="missing_article")
        self.amount = to_decimal(self.amount, "amount")
        if self.amount <= 0:
            raise InvalidRequestError("amount must be positive", reason="invalid_amount")
        if self.shipping_estimate is not None:
            if self.meetup is not None:
                raise InvalidRequestError(
                    "shipping estimate is only valid for ship-to-buyer offers",
                    reason="shipping_with_meetup",
                )
            self.shipping_estimate = to_decimal(self.shipping_estimate, "shipping_estimate")
            if self.shipping_estimate < 0:
                raise InvalidRequestError("shipping_estimate must not be negative", reason="invalid_amount")
            if self.total_amount is None:
                self.total_amount = self.amount + self.shipping_estimate
        if self.total_amount is not None:
            self.total_amount = to_decimal(self.total_amount, "total_amount")
            if self.meetup is not None:
                raise InvalidRequestError(
                    "total amount is only valid for ship-to-buyer offers",
                    reason="shipping_with_meetup",
                )

    @property
    def is_meetup(self) -> bool:
        return self.meetup is not None

    @property
    def responder_role(self) -> PartyRole:
        return self.last_proposed_by.other()

    @property
    def awaiting_role(self) -> Optional[PartyRole]:
        """Party whose answer is awaited, None once negotiation is over."""
        return self.responder_role if self.awaiting_response else None

    @property
    def payable_amount(self) -> Decimal:
        return self.total_amount if self.total_amount is not None else self.amount

    @property
    def awaiting_response(self) -> bool:
        return self.state in OPEN_OFFER_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state not in OPEN_OFFER_STATES

    @property
    def is_active(self) -> bool:
        if self.state in OPEN_OFFER_STATES:
            return True
        return self.state is OfferStatus.ACCEPTED and not self.is_completed

    @property
    def in_fulfillment(self) -> bool:
        return self.state is OfferStatus.ACCEPTED and not self.is_completed

    @property
    def subject_key(self) -> str:
        return self.article_id

    def set_amount(self, amount: Decimal) -> None:
        self.amount = amount
        if self.shipping_estimate is not None:
            self.total_amount = amount + self.shipping_estimate

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update({
            "article_id": self.article_id,
            "amount": str(self.amount),
            "message": self.message,
            "meetup": self.meetup.to_dict() if self.meetup else None,
            "shipping_estimate": _dec(self.shipping_estimate),
            "total_amount": _dec(self.total_amount),
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "tracking_id": self.tracking_id,
            "last_proposed_by": self.last_proposed_by.value,
            "negotiation": [e.to_dict() for e in self.negotiation],
        })
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Offer":
        meetup = data.get("meetup")
        shipping = data.get("shipping_estimate")
        total = data.get("total_amount")
        return cls(
            state=OfferStatus(data["state"]),
            article_id=data["article_id"],
            amount=Decimal(data["amount"]),
            message=data.get("message"),
            meetup=MeetupDetails.from_dict(meetup) if meetup else None,
            shipping_estimate=Decimal(shipping) if shipping is not None else None,
            total_amount=Decimal(total) if total is not None else None,
            conversation_id=data.get("conversation_id"),
            message_id=data.get("message_id"),
            tracking_id=data.get("tracking_id"),
            last_proposed_by=PartyRole(data.get("last_proposed_by", PartyRole.INITIATOR.value)),
            negotiation=[NegotiationEntry.from_dict(e) for e in data.get("negotiation") or []],
            **cls._base_kwargs(data),
        )


# ============================================================================
# SWAP
# ============================================================================

@dataclass
class Swap(Transaction):
    """
    Item-for-item exchange.

    The initiator proposes giving initiator_item for receiver_item; the
    counterparty (receiver) accepts, declines, or lets it expire.
    """

    kind: ClassVar[TransactionKind] = TransactionKind.SWAP

    state: SwapStatus = SwapStatus.PROPOSED
    initiator_item: Optional[ItemSnapshot] = None
    receiver_item: Optional[ItemSnapshot] = None
    cash_top_up: Optional[CashTopUp] = None
    message: Optional[str] = None
    swap_party_id: Optional[str] = None
    exchange_mode: Optional[ExchangeMode] = None
    photos: Dict[PartyRole, PhotoProof] = field(default_factory=dict)
    shipped_at: Dict[PartyRole, datetime] = field(default_factory=dict)
    received_at: Dict[PartyRole, datetime] = field(default_factory=dict)
    tracking_ids: Dict[PartyRole, str] = field(default_factory=dict)
    dispute_reason: Optional[str] = None
    disputed_by: Optional[PartyRole] = None

    def __post_init__(self):
        super().__post_init__()
        if self.initiator_item is None or self.receiver_item is None:
            raise InvalidRequestError("both items are required", reason="missing_item")
        if not self.initiator_item.article_id or not self.receiver_item.article_id:
            raise InvalidRequestError("both items need an article_id", reason="missing_article")
        if self.initiator_item.article_id == self.receiver_item.article_id:
            raise InvalidRequestError("cannot swap an article for itself", reason="same_article")
        if self.cash_top_up is not None:
            amount = to_decimal(self.cash_top_up.amount, "cash_top_up.amount")
            if amount <= 0:
                raise InvalidRequestError("cash top-up must be positive", reason="invalid_amount")
            if self.cash_top_up.payer_id not in self.parties:
                raise InvalidRequestError("cash top-up payer must be a party", reason="payer_not_party")
            if amount != self.cash_top_up.amount:
                self.cash_top_up = replace(self.cash_top_up, amount=amount)

    @property
    def awaiting_response(self) -> bool:
        return self.state is SwapStatus.PROPOSED

    @property
    def is_terminal(self) -> bool:
        return self.state in CLOSED_SWAP_STATES or self.state is SwapStatus.DISPUTED

    @property
    def is_active(self) -> bool:
        return self.state not in CLOSED_SWAP_STATES

    @property
    def in_fulfillment(self) -> bool:
        return self.state in FULFILLMENT_SWAP_STATES

    @property
    def is_completed(self) -> bool:
        return self.state is SwapStatus.COMPLETED

    @property
    def subject_key(self) -> str:
        return f"{self.initiator_item.article_id}:{self.receiver_item.article_id}"

    def last_activity(self) -> datetime:
        moments = [super().last_activity()]
        moments.extend(p.uploaded_at for p in self.photos.values())
        moments.extend(self.shipped_at.values())
        moments.extend(self.received_at.values())
        return max(moments)

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update({
            "initiator_item": self.initiator_item.to_dict(),
            "receiver_item": self.receiver_item.to_dict(),
            "cash_top_up": self.cash_top_up.to_dict() if self.cash_top_up else None,
            "message": self.message,
            "swap_party_id": self.swap_party_id,
            "exchange_mode": self.exchange_mode.value if self.exchange_mode else None,
            "photos": _role_map_out(self.photos, lambda p: p.to_dict()),
            "shipped_at": _role_map_out(self.shipped_at, _dt),
            "received_at": _role_map_out(self.received_at, _dt),
            "tracking_ids": _role_map_out(self.tracking_ids, str),
            "dispute_reason": self.dispute_reason,
            "disputed_by": self.disputed_by.value if self.disputed_by else None,
        })
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Swap":
        top_up = data.get("cash_top_up")
        mode = data.get("exchange_mode")
        disputed_by = data.get("disputed_by")
        return cls(
            state=SwapStatus(data["state"]),
            initiator_item=ItemSnapshot.from_dict(data["initiator_item"]),
            receiver_item=ItemSnapshot.from_dict(data["receiver_item"]),
            cash_top_up=CashTopUp.from_dict(top_up) if top_up else None,
            message=data.get("message"),
            swap_party_id=data.get("swap_party_id"),
            exchange_mode=ExchangeMode(mode) if mode else None,
            photos=_role_map_in(data.get("photos"), PhotoProof.from_dict),
            shipped_at=_role_map_in(data.get("shipped_at"), parse_timestamp),
            received_at=_role_map_in(data.get("received_at"), parse_timestamp),
            tracking_ids=_role_map_in(data.get("tracking_ids"), str),
            dispute_reason=data.get("dispute_reason"),
            disputed_by=PartyRole(disputed_by) if disputed_by else None,
            **cls._base_kwargs(data),
        )
