"""
Transition authority: the single place that decides whether a lifecycle
change is legal and what it does to a record.

ARCHITECTURE:
- TRANSITION_RULES registry: (kind, action) -> legal source states, target
  state, which party may ask, whether the decision window applies
- check(): validates party membership, state legality, role, deadline
- apply(): negotiation decisions (propose/accept/reject/counter/cancel/
  expire/dispute) on a CLONE of the record, returned as a Decision
- advance(): aggregate readiness. Pure function over the per-party maps;
  moves the macro state (photos -> shipping -> completed, meetup -> completed)
  and is run after every per-party write so the move lands in the same
  conditional write

CRITICAL RULES:
1. All transitions must be pre-registered
2. Terminal states never transition further
3. The authority never touches storage; the caller commits the Decision
4. Expire on an already-expired record is a no-op
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from dealdesk.logging import get_logger, LogStream
from dealdesk.state.errors import (
    ExpiredWindowError,
    IncompleteFulfillmentError,
    InvalidRequestError,
    InvalidTransitionError,
    UnauthorizedActorError,
)
from dealdesk.state.models import (
    OPEN_OFFER_STATES,
    SYSTEM_ACTOR,
    CashTopUp,
    ExchangeMode,
    ItemSnapshot,
    MeetupDetails,
    NegotiationEntry,
    Offer,
    OfferStatus,
    PartyRole,
    Swap,
    SwapStatus,
    Transaction,
    TransactionKind,
    both_parties,
    to_decimal,
)
from dealdesk.time import ensure_utc


# ============================================================================
# ACTIONS AND PERMISSIONS
# ============================================================================

class Action(str, Enum):
    PROPOSE = "propose"
    ACCEPT = "accept"
    REJECT = "reject"
    DECLINE = "decline"
    COUNTER_PRICE = "counter_price"
    COUNTER_LOCATION = "counter_location"
    COUNTER_TIME = "counter_time"
    CANCEL = "cancel"
    EXPIRE = "expire"
    DISPUTE = "dispute"
    SELECT_EXCHANGE_MODE = "select_exchange_mode"
    UPLOAD_PHOTOS = "upload_photos"
    CONFIRM_SHIPPING = "confirm_shipping"
    CONFIRM_RECEPTION = "confirm_reception"
    RECORD_DELIVERY = "record_delivery"
    CONFIRM_MEETUP = "confirm_meetup"
    REPORT_NO_SHOW = "report_no_show"
    COMPLETE = "complete"
    RATE = "rate"
    ADVANCE = "advance"


COUNTER_ACTIONS = frozenset({Action.COUNTER_PRICE, Action.COUNTER_LOCATION, Action.COUNTER_TIME})

# Actions decided by apply(); everything else is fulfillment
NEGOTIATION_ACTIONS = COUNTER_ACTIONS | {
    Action.ACCEPT, Action.REJECT, Action.DECLINE, Action.CANCEL, Action.EXPIRE, Action.DISPUTE,
}


class Permission(str, Enum):
    """Which user may request an action."""
    RESPONDER = "responder"         # party whose answer is awaited
    PROPOSER = "proposer"           # party who made the current proposal
    INITIATOR = "initiator"
    COUNTERPARTY = "counterparty"
    EITHER_PARTY = "either_party"
    SYSTEM = "system"               # sweeper, carrier webhooks


# ============================================================================
# TRANSITION DEFINITION
# ============================================================================

@dataclass(frozen=True)
class TransitionRule:
    """Immutable definition of one legal action."""
    kind: TransactionKind
    action: Action
    from_states: FrozenSet[Enum]
    to_state: Optional[Enum]        # None = macro state unchanged
    permission: Permission
    deadline_gated: bool = False
    description: str = ""


_OPEN = frozenset(OPEN_OFFER_STATES)
_SWAP_DISPUTABLE = frozenset({
    SwapStatus.PROPOSED, SwapStatus.ACCEPTED, SwapStatus.PHOTOS_PENDING, SwapStatus.SHIPPING,
})

OFFER, SWAP = TransactionKind.OFFER, TransactionKind.SWAP

TRANSITION_RULES: Tuple[TransitionRule, ...] = (
    # Offer negotiation
    TransitionRule(OFFER, Action.ACCEPT, _OPEN, OfferStatus.ACCEPTED, Permission.RESPONDER, True,
                   "Responder accepts the current proposal"),
    TransitionRule(OFFER, Action.REJECT, _OPEN, OfferStatus.REJECTED, Permission.RESPONDER, True,
                   "Responder rejects the current proposal"),
    TransitionRule(OFFER, Action.COUNTER_PRICE, _OPEN, OfferStatus.COUNTER_PRICE, Permission.RESPONDER, True,
                   "Responder proposes a different amount"),
    TransitionRule(OFFER, Action.COUNTER_LOCATION, _OPEN, OfferStatus.COUNTER_LOCATION, Permission.RESPONDER, True,
                   "Responder proposes a different meetup location"),
    TransitionRule(OFFER, Action.COUNTER_TIME, _OPEN, OfferStatus.COUNTER_TIME, Permission.RESPONDER, True,
                   "Responder proposes a different meetup time"),
    TransitionRule(OFFER, Action.CANCEL, _OPEN, OfferStatus.CANCELLED, Permission.PROPOSER, True,
                   "Proposer withdraws the current proposal"),
    TransitionRule(OFFER, Action.EXPIRE, _OPEN, OfferStatus.EXPIRED, Permission.SYSTEM, False,
                   "Decision window elapsed"),

    # Offer fulfillment
    TransitionRule(OFFER, Action.CONFIRM_MEETUP, frozenset({OfferStatus.ACCEPTED}), None, Permission.EITHER_PARTY,
                   description="Party confirms the in-person handover"),
    TransitionRule(OFFER, Action.REPORT_NO_SHOW, frozenset({OfferStatus.ACCEPTED}), None, Permission.EITHER_PARTY,
                   description="Party reports the other did not show up"),
    TransitionRule(OFFER, Action.RECORD_DELIVERY, frozenset({OfferStatus.ACCEPTED}), None, Permission.SYSTEM,
                   description="Carrier reports delivery to the buyer"),
    TransitionRule(OFFER, Action.COMPLETE, frozenset({OfferStatus.ACCEPTED}), None, Permission.EITHER_PARTY,
                   description="Force completion once the fulfillment gate holds"),
    TransitionRule(OFFER, Action.RATE, frozenset({OfferStatus.ACCEPTED}), None, Permission.EITHER_PARTY,
                   description="Party rates a completed offer"),

    # Swap negotiation
    TransitionRule(SWAP, Action.ACCEPT, frozenset({SwapStatus.PROPOSED}), SwapStatus.ACCEPTED,
                   Permission.COUNTERPARTY, True, "Receiver accepts the swap"),
    TransitionRule(SWAP, Action.DECLINE, frozenset({SwapStatus.PROPOSED}), SwapStatus.DECLINED,
                   Permission.COUNTERPARTY, True, "Receiver declines the swap"),
    TransitionRule(SWAP, Action.CANCEL, frozenset({SwapStatus.PROPOSED}), SwapStatus.CANCELLED,
                   Permission.INITIATOR, True, "Initiator withdraws the swap"),
    TransitionRule(SWAP, Action.EXPIRE, frozenset({SwapStatus.PROPOSED}), SwapStatus.EXPIRED,
                   Permission.SYSTEM, False, "Decision window elapsed"),
    TransitionRule(SWAP, Action.DISPUTE, _SWAP_DISPUTABLE, SwapStatus.DISPUTED,
                   Permission.EITHER_PARTY, False, "Manual escalation"),

    # Swap fulfillment
    TransitionRule(SWAP, Action.SELECT_EXCHANGE_MODE, frozenset({SwapStatus.ACCEPTED}), None,
                   Permission.EITHER_PARTY, description="Choose hand delivery or shipping (once)"),
    TransitionRule(SWAP, Action.UPLOAD_PHOTOS, frozenset({SwapStatus.PHOTOS_PENDING}), None,
                   Permission.EITHER_PARTY, description="Photo proof of the item before shipping"),
    TransitionRule(SWAP, Action.CONFIRM_SHIPPING, frozenset({SwapStatus.SHIPPING}), None,
                   Permission.EITHER_PARTY, description="Party shipped its item"),
    TransitionRule(SWAP, Action.CONFIRM_RECEPTION, frozenset({SwapStatus.SHIPPING}), None,
                   Permission.EITHER_PARTY, description="Party received the other item"),
    TransitionRule(SWAP, Action.RECORD_DELIVERY, frozenset({SwapStatus.SHIPPING}), None,
                   Permission.SYSTEM, description="Carrier reports one parcel delivered"),
    TransitionRule(SWAP, Action.CONFIRM_MEETUP, frozenset({SwapStatus.ACCEPTED}), None,
                   Permission.EITHER_PARTY, description="Party confirms the hand delivery"),
    TransitionRule(SWAP, Action.REPORT_NO_SHOW, frozenset({SwapStatus.ACCEPTED}), None,
                   Permission.EITHER_PARTY, description="Party reports the other did not show up"),
    TransitionRule(SWAP, Action.COMPLETE, frozenset({SwapStatus.ACCEPTED, SwapStatus.SHIPPING}),
                   SwapStatus.COMPLETED, Permission.EITHER_PARTY,
                   description="Force completion once the fulfillment gate holds"),
    TransitionRule(SWAP, Action.RATE, frozenset({SwapStatus.COMPLETED}), None,
                   Permission.EITHER_PARTY, description="Party rates a completed swap"),
)

_rule_map: Dict[Tuple[TransactionKind, Action], TransitionRule] = {
    (rule.kind, rule.action): rule for rule in TRANSITION_RULES
}


# ============================================================================
# DECISION
# ============================================================================

@dataclass(frozen=True)
class AutoStep:
    """Macro-state move derived from aggregate readiness."""
    action: Action
    from_state: Enum
    to_state: Enum


@dataclass
class Decision:
    """
    Outcome of a validated request, not yet committed.

    record is a modified clone; the caller writes it conditionally on
    expected_version and journals/emits only after the write succeeded.
    """
    record: Transaction
    action: Action
    actor_id: str
    from_state: Optional[Enum]
    to_state: Enum
    expected_version: int
    auto_steps: List[AutoStep] = field(default_factory=list)
    noop: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
    result: Any = None


# ============================================================================
# READINESS (pure)
# ============================================================================

def fulfillment_ready(record: Transaction) -> bool:
    """True when every party-side fulfillment step for completion is recorded."""
    if isinstance(record, Swap):
        if record.exchange_mode is ExchangeMode.SHIPPING:
            return both_parties(record.received_at)
        if record.exchange_mode is ExchangeMode.HAND_DELIVERY:
            return both_parties(record.meetup_confirmations)
        return False
    if isinstance(record, Offer):
        if record.is_meetup:
            return both_parties(record.meetup_confirmations)
        return record.stamped("delivered") is not None
    return False


def next_step(record: Transaction) -> Optional[AutoStep]:
    """The single macro move the record is ready for, if any."""
    if isinstance(record, Swap):
        state = record.state
        if state is SwapStatus.ACCEPTED and record.exchange_mode is ExchangeMode.SHIPPING:
            return AutoStep(Action.ADVANCE, state, SwapStatus.PHOTOS_PENDING)
        if state is SwapStatus.ACCEPTED and record.exchange_mode is ExchangeMode.HAND_DELIVERY \
                and both_parties(record.meetup_confirmations):
            return AutoStep(Action.COMPLETE, state, SwapStatus.COMPLETED)
        if state is SwapStatus.PHOTOS_PENDING and both_parties(record.photos):
            return AutoStep(Action.ADVANCE, state, SwapStatus.SHIPPING)
        if state is SwapStatus.SHIPPING and both_parties(record.received_at):
            return AutoStep(Action.COMPLETE, state, SwapStatus.COMPLETED)
        return None
    if isinstance(record, Offer):
        if record.state is OfferStatus.ACCEPTED and not record.is_completed and fulfillment_ready(record):
            return AutoStep(Action.COMPLETE, record.state, record.state)
    return None


def in_person_blocker(record: Transaction) -> Optional[str]:
    """Why an in-person step (meetup confirm, no-show) cannot apply, if it cannot."""
    if isinstance(record, Offer):
        if not record.is_meetup:
            return "not_a_meetup_offer"
        if record.is_completed:
            return "already_completed"
        return None
    if record.exchange_mode is not ExchangeMode.HAND_DELIVERY:
        return "not_hand_delivery"
    return None


# ============================================================================
# AUTHORITY
# ============================================================================

class TransitionAuthority:
    """
    Validates and decides lifecycle transitions.

    USAGE:
        authority = TransitionAuthority(offer_ttl=timedelta(hours=48))
        decision = authority.apply(offer, Action.ACCEPT, seller_id, now)
        store.compare_and_set(decision.record, decision.expected_version)
    """

    def __init__(
        self,
        offer_ttl: timedelta = timedelta(hours=48),
        swap_ttl: Optional[timedelta] = None,
        counter_resets_expiry: bool = True,
    ):
        self.offer_ttl = offer_ttl
        self.swap_ttl = swap_ttl
        self.counter_resets_expiry = counter_resets_expiry
        self.logger = get_logger(LogStream.NEGOTIATION)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def rule_for(kind: TransactionKind, action: Action) -> Optional[TransitionRule]:
        return _rule_map.get((TransactionKind(kind), Action(action)))

    @staticmethod
    def _fail(cls, message: str, record: Transaction, action: Action, actor_id: str, reason: str):
        return cls(
            message,
            transaction_id=record.transaction_id,
            current_state=record.state.value,
            attempted=Action(action).value,
            actor_id=actor_id,
            reason=reason,
        )

    @staticmethod
    def _permits(permission: Permission, record: Transaction, role: PartyRole) -> bool:
        if permission is Permission.EITHER_PARTY:
            return True
        if permission is Permission.INITIATOR:
            return role is PartyRole.INITIATOR
        if permission is Permission.COUNTERPARTY:
            return role is PartyRole.COUNTERPARTY
        if permission is Permission.RESPONDER:
            if isinstance(record, Offer):
                return role is record.responder_role
            return role is PartyRole.COUNTERPARTY
        if permission is Permission.PROPOSER:
            if isinstance(record, Offer):
                return role is record.last_proposed_by
            return role is PartyRole.INITIATOR
        return False

    def check(self, record: Transaction, action: Action, actor_id: str, now: datetime) -> TransitionRule:
        """
        Validate a request against the registry.

        Order: party membership, state legality, role, deadline.

        Raises:
            UnauthorizedActorError, InvalidTransitionError, ExpiredWindowError
        """
        action = Action(action)
        rule = self.rule_for(record.kind, action)
        if rule is None:
            raise self._fail(
                InvalidTransitionError,
                f"{action.value} is not supported for {record.kind.value}s",
                record, action, actor_id, "unsupported_action",
            )

        role = record.role_of(actor_id)
        if rule.permission is Permission.SYSTEM:
            if actor_id != SYSTEM_ACTOR:
                self._log_unauthorized(record, action, actor_id, "system_only")
                raise self._fail(
                    UnauthorizedActorError,
                    f"{action.value} can only be issued by the system",
                    record, action, actor_id, "system_only",
                )
        elif role is None:
            self._log_unauthorized(record, action, actor_id, "not_a_party")
            raise self._fail(
                UnauthorizedActorError,
                f"{actor_id} is not a party to {record.transaction_id}",
                record, action, actor_id, "not_a_party",
            )

        if record.state not in rule.from_states:
            raise self._fail(
                InvalidTransitionError,
                f"Cannot {action.value} a {record.kind.value} in state {record.state.value}",
                record, action, actor_id, "illegal_from_state",
            )

        if rule.permission is not Permission.SYSTEM and not self._permits(rule.permission, record, role):
            self._log_unauthorized(record, action, actor_id, f"requires_{rule.permission.value}")
            raise self._fail(
                UnauthorizedActorError,
                f"{action.value} requires the {rule.permission.value}",
                record, action, actor_id, f"requires_{rule.permission.value}",
            )

        if rule.deadline_gated and record.is_overdue(now):
            raise self._fail(
                ExpiredWindowError,
                f"Decision window closed at {record.expires_at.isoformat()}",
                record, action, actor_id, "window_elapsed",
            )

        return rule

    def _log_unauthorized(self, record: Transaction, action: Action, actor_id: str, reason: str) -> None:
        self.logger.warning(
            f"Unauthorized {action.value} on {record.transaction_id}",
            extra={
                "transaction_id": record.transaction_id,
                "action": action.value,
                "actor_id": actor_id,
                "state": record.state.value,
                "reason": reason,
            },
        )

    def validate_transition(
        self, record: Transaction, action: Action, actor_id: str, now: datetime
    ) -> Tuple[bool, str]:
        """
        Returns:
            (is_valid, reason)
        """
        try:
            self.check(record, action, actor_id, now)
        except (InvalidTransitionError, UnauthorizedActorError) as e:
            return False, e.reason or e.message
        return True, "valid"

    def blocked_reason(self, record: Transaction, action: Action, actor_id: str, now: datetime) -> Optional[str]:
        """
        Record-level precondition of *action* beyond the rule table.

        Mirrors the guards of the fulfillment coordinator, the rating
        collector and force_complete. Payload checks (amounts, photo
        lists, scores) are not covered.

        Returns:
            reason code of the failing guard, or None
        """
        role = record.role_of(actor_id)

        if action in (Action.COUNTER_LOCATION, Action.COUNTER_TIME):
            if isinstance(record, Offer) and record.meetup is None:
                return "not_a_meetup_offer"
        elif action is Action.SELECT_EXCHANGE_MODE:
            if record.exchange_mode is not None:
                return "exchange_mode_already_set"
        elif action is Action.UPLOAD_PHOTOS:
            if role in record.photos:
                return "photos_already_submitted"
        elif action is Action.CONFIRM_SHIPPING:
            if role in record.shipped_at:
                return "already_shipped"
        elif action is Action.CONFIRM_RECEPTION:
            if role in record.received_at:
                return "already_received"
        elif action is Action.CONFIRM_MEETUP:
            blocker = in_person_blocker(record)
            if blocker is not None:
                return blocker
            if role in record.meetup_confirmations:
                return "already_confirmed"
        elif action is Action.REPORT_NO_SHOW:
            blocker = in_person_blocker(record)
            if blocker is not None:
                return blocker
            if record.has_reported_no_show(role):
                return "already_reported"
            if isinstance(record, Offer) and record.meetup.date_time is not None \
                    and ensure_utc(now) < record.meetup.date_time:
                return "meetup_not_yet_due"
        elif action is Action.COMPLETE:
            if record.is_completed:
                return "already_completed"
            if not fulfillment_ready(record):
                return "gate_not_satisfied"
        elif action is Action.RATE:
            if not record.is_completed:
                return "not_completed"
            if role in record.ratings:
                return "already_rated"
        return None

    def available_actions(self, record: Transaction, actor_id: str, now: datetime) -> List[Action]:
        """Actions *actor_id* could request right now."""
        actions = []
        for rule in TRANSITION_RULES:
            if rule.kind is not record.kind:
                continue
            if not self.validate_transition(record, rule.action, actor_id, now)[0]:
                continue
            if self.blocked_reason(record, rule.action, actor_id, now) is None:
                actions.append(rule.action)
        return actions

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def propose_offer(
        self,
        buyer_id: str,
        seller_id: str,
        article_id: str,
        amount: Any,
        now: datetime,
        *,
        message: Optional[str] = None,
        meetup_location: Optional[str] = None,
        meetup_time: Optional[datetime] = None,
        shipping_estimate: Any = None,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Decision:
        """New offer in pending with a decision window of offer_ttl."""
        now = ensure_utc(now)
        if meetup_time is not None and not meetup_location:
            raise InvalidRequestError("a meetup time needs a meetup location", reason="meetup_without_location")
        meetup = None
        if meetup_location:
            meetup = MeetupDetails(
                location=meetup_location,
                date_time=ensure_utc(meetup_time) if meetup_time else None,
                proposed_by=PartyRole.INITIATOR,
            )

        offer = Offer(
            transaction_id=transaction_id or uuid.uuid4().hex,
            initiator_id=buyer_id,
            counterparty_id=seller_id,
            created_at=now,
            state=OfferStatus.PENDING,
            expires_at=now + self.offer_ttl,
            article_id=article_id,
            amount=amount,
            message=message,
            meetup=meetup,
            shipping_estimate=shipping_estimate,
            conversation_id=conversation_id,
            message_id=message_id,
            last_proposed_by=PartyRole.INITIATOR,
        )
        offer.stamp(OfferStatus.PENDING.value, now)
        offer.negotiation.append(NegotiationEntry(
            action=Action.PROPOSE.value,
            by=PartyRole.INITIATOR,
            at=now,
            new_value=str(offer.amount),
            note=message,
        ))
        return Decision(
            record=offer,
            action=Action.PROPOSE,
            actor_id=buyer_id,
            from_state=None,
            to_state=offer.state,
            expected_version=0,
            details={"amount": str(offer.amount), "article_id": article_id, "meetup": offer.is_meetup},
        )

    def propose_swap(
        self,
        initiator_id: str,
        receiver_id: str,
        initiator_item: ItemSnapshot,
        receiver_item: ItemSnapshot,
        now: datetime,
        *,
        message: Optional[str] = None,
        cash_top_up: Optional[CashTopUp] = None,
        swap_party_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Decision:
        """New swap in proposed; deadline only when swap_ttl is configured."""
        now = ensure_utc(now)
        swap = Swap(
            transaction_id=transaction_id or uuid.uuid4().hex,
            initiator_id=initiator_id,
            counterparty_id=receiver_id,
            created_at=now,
            state=SwapStatus.PROPOSED,
            expires_at=now + self.swap_ttl if self.swap_ttl else None,
            initiator_item=initiator_item,
            receiver_item=receiver_item,
            cash_top_up=cash_top_up,
            message=message,
            swap_party_id=swap_party_id,
        )
        swap.stamp(SwapStatus.PROPOSED.value, now)
        return Decision(
            record=swap,
            action=Action.PROPOSE,
            actor_id=initiator_id,
            from_state=None,
            to_state=swap.state,
            expected_version=0,
            details={"subject": swap.subject_key},
        )

    # ------------------------------------------------------------------
    # Negotiation decisions
    # ------------------------------------------------------------------

    def apply(self, record: Transaction, action: Action, actor_id: str, now: datetime, **payload) -> Decision:
        """
        Decide a negotiation action on a clone of *record*.

        Payload:
            counter_price:     amount
            counter_location:  location
            counter_time:      date_time
            dispute:           reason
            any:               note (free text kept in the negotiation trail)
        """
        action = Action(action)
        now = ensure_utc(now)

        if action not in NEGOTIATION_ACTIONS:
            raise self._fail(
                InvalidTransitionError,
                f"{action.value} is a fulfillment action",
                record, action, actor_id, "not_a_negotiation_action",
            )

        if action is Action.EXPIRE:
            if record.state in (OfferStatus.EXPIRED, SwapStatus.EXPIRED):
                return Decision(
                    record=record, action=action, actor_id=actor_id,
                    from_state=record.state, to_state=record.state,
                    expected_version=record.version, noop=True,
                )
            rule = self.check(record, action, actor_id, now)
            if not record.is_overdue(now):
                raise self._fail(
                    InvalidTransitionError,
                    "Decision window has not elapsed",
                    record, action, actor_id, "not_due",
                )
        else:
            rule = self.check(record, action, actor_id, now)

        new = record.clone()
        role = record.role_of(actor_id)
        details: Dict[str, Any] = {}

        if action in COUNTER_ACTIONS:
            details = self._counter(new, action, role, now, payload)
        elif action is Action.DISPUTE:
            reason = (payload.get("reason") or "").strip()
            if not reason:
                raise self._fail(InvalidRequestError, "a dispute needs a reason", record, action, actor_id, "missing_reason")
            new.dispute_reason = reason
            new.disputed_by = role
            details = {"reason": reason}

        new.state = rule.to_state
        new.stamp(rule.to_state.value, now)

        if isinstance(new, Offer) and action not in COUNTER_ACTIONS:
            new.negotiation.append(NegotiationEntry(
                action=action.value,
                by=role,
                at=now,
                new_value=str(new.amount),
                note=payload.get("note"),
            ))

        self.logger.info(
            f"{record.kind.value} {record.transaction_id}: {action.value} {record.state.value} -> {new.state.value}",
            extra={
                "transaction_id": record.transaction_id,
                "action": action.value,
                "from_state": record.state.value,
                "to_state": new.state.value,
                "actor_id": actor_id,
            },
        )

        return Decision(
            record=new,
            action=action,
            actor_id=actor_id,
            from_state=record.state,
            to_state=new.state,
            expected_version=record.version,
            details=details,
        )

    def _counter(self, offer: Offer, action: Action, role: PartyRole, now: datetime, payload: Dict[str, Any]) -> Dict[str, Any]:
        note = payload.get("note")
        if action is Action.COUNTER_PRICE:
            new_amount = to_decimal(payload.get("amount"), "amount")
            if new_amount <= 0:
                raise self._fail(InvalidRequestError, "amount must be positive", offer, action, offer.party_id(role), "invalid_amount")
            if new_amount == offer.amount:
                raise self._fail(InvalidRequestError, "counter amount equals the current amount", offer, action, offer.party_id(role), "unchanged_value")
            previous = str(offer.amount)
            offer.set_amount(new_amount)
            current = str(new_amount)
            if offer.meetup is not None:
                offer.meetup = replace(offer.meetup, proposed_by=role)
        else:
            if offer.meetup is None:
                raise self._fail(
                    InvalidTransitionError,
                    f"{action.value} only applies to meetup offers",
                    offer, action, offer.party_id(role), "not_a_meetup_offer",
                )
            if action is Action.COUNTER_LOCATION:
                location = (payload.get("location") or "").strip()
                if not location:
                    raise self._fail(InvalidRequestError, "location is required", offer, action, offer.party_id(role), "missing_location")
                if location == offer.meetup.location:
                    raise self._fail(InvalidRequestError, "counter location equals the current location", offer, action, offer.party_id(role), "unchanged_value")
                previous = offer.meetup.location
                offer.meetup = replace(offer.meetup, location=location, proposed_by=role)
                current = location
            else:
                date_time = payload.get("date_time")
                if not isinstance(date_time, datetime):
                    raise self._fail(InvalidRequestError, "date_time is required", offer, action, offer.party_id(role), "missing_date_time")
                date_time = ensure_utc(date_time)
                if date_time == offer.meetup.date_time:
                    raise self._fail(InvalidRequestError, "counter time equals the current time", offer, action, offer.party_id(role), "unchanged_value")
                previous = offer.meetup.date_time.isoformat() if offer.meetup.date_time else None
                offer.meetup = replace(offer.meetup, date_time=date_time, proposed_by=role)
                current = date_time.isoformat()

        offer.last_proposed_by = role
        if self.counter_resets_expiry:
            offer.expires_at = now + self.offer_ttl
        offer.negotiation.append(NegotiationEntry(
            action=action.value,
            by=role,
            at=now,
            previous_value=previous,
            new_value=current,
            note=note,
        ))
        return {"previous_value": previous, "new_value": current, "expires_at": offer.expires_at}

    # ------------------------------------------------------------------
    # Aggregate readiness
    # ------------------------------------------------------------------

    def advance(self, record: Transaction, now: datetime) -> List[AutoStep]:
        """
        Apply every macro move the record is ready for (in place).

        Idempotent: a record that is already advanced yields no steps.
        """
        steps: List[AutoStep] = []
        step = next_step(record)
        while step is not None:
            record.state = step.to_state
            if step.action is Action.COMPLETE:
                record.stamp("completed", now)
            else:
                record.stamp(step.to_state.value, now)
            steps.append(step)
            step = next_step(record)
        return steps

    def force_complete(self, record: Transaction, actor_id: str, now: datetime) -> Decision:
        """
        Manual completion; only legal once the aggregate gate already holds.

        Raises:
            IncompleteFulfillmentError: a party-side step is missing
        """
        self.check(record, Action.COMPLETE, actor_id, now)
        if record.is_completed:
            raise self._fail(InvalidTransitionError, "already completed", record, Action.COMPLETE, actor_id, "already_completed")
        if not fulfillment_ready(record):
            raise self._fail(
                IncompleteFulfillmentError,
                "Both parties must finish their fulfillment steps first",
                record, Action.COMPLETE, actor_id, "gate_not_satisfied",
            )
        new = record.clone()
        if isinstance(new, Swap):
            new.state = SwapStatus.COMPLETED
        new.stamp("completed", now)
        return Decision(
            record=new,
            action=Action.COMPLETE,
            actor_id=actor_id,
            from_state=record.state,
            to_state=new.state,
            expected_version=record.version,
        )


