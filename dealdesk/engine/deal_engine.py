"""
Deal engine: the entry point for every party and system request.

ARCHITECTURE:
- Reads the record fresh from the store on every request
- Delegates the decision to the TransitionAuthority (negotiation),
  FulfillmentCoordinator (post-acceptance steps) or RatingCollector
- Commits with a conditional write on the version it read
- Journals and emits events ONLY after the write committed
- Scopes logs to the transaction via LogContext

CONCURRENCY:
- Decision actions (accept, reject, counter, cancel, mode selection,
  expire, dispute, complete) are NOT retried: the loser of a race gets
  StaleWriteError, or InvalidTransitionError if it read after the winner
- Per-party writes (photos, shipping, reception, carrier delivery, meetup
  confirmation, no-show, rating) touch disjoint fields: on StaleWriteError
  they re-read and re-apply, up to max_merge_attempts

EXPIRY:
- A request that finds the decision window closed fails with
  ExpiredWindowError and the engine expires the record right away,
  through the same authority path the sweeper uses
- A proposal blocked by an overdue active record for the same subject
  expires that record and retries the insert once

USAGE:
    engine = DealEngine(store, authority, coordinator, collector, clock, event_bus=bus)
    offer = engine.propose_offer("buyer", "seller", "article-1", "25.00")
    engine.accept_offer(offer.transaction_id, "seller")
"""

import uuid
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Union

from dealdesk.events.bus import DealEventBus
from dealdesk.events.types import (
    NoShowReportedEvent,
    PaymentRequestedEvent,
    RatingRecordedEvent,
    TransitionEvent,
)
from dealdesk.fulfillment.coordinator import FulfillmentCoordinator
from dealdesk.logging import get_logger, LogContext, LogStream
from dealdesk.ratings.collector import RatingCollector, RatingSummary
from dealdesk.state.authority import Action, Decision, TransitionAuthority
from dealdesk.state.errors import (
    DealError,
    DuplicateProposalError,
    ExpiredWindowError,
    InvalidRequestError,
    InvalidTransitionError,
    StaleWriteError,
    TransactionNotFoundError,
)
from dealdesk.state.models import (
    SYSTEM_ACTOR,
    CashTopUp,
    ItemSnapshot,
    Offer,
    Rating,
    Swap,
    SwapStatus,
    Transaction,
    TransactionKind,
    to_decimal,
)
from dealdesk.state.store import TransactionStore
from dealdesk.state.transaction_log import TransactionLog
from dealdesk.time import Clock, RealTimeClock, localize

Decide = Callable[[Transaction, datetime], Decision]

ACTIVE_SWAP_STATES = (SwapStatus.ACCEPTED, SwapStatus.PHOTOS_PENDING, SwapStatus.SHIPPING)


class DealEngine:
    """Orchestrates read -> decide -> conditional write -> journal -> emit."""

    def __init__(
        self,
        store: TransactionStore,
        authority: TransitionAuthority,
        coordinator: FulfillmentCoordinator,
        collector: RatingCollector,
        clock: Optional[Clock] = None,
        *,
        event_bus: Optional[DealEventBus] = None,
        journal: Optional[TransactionLog] = None,
        max_merge_attempts: int = 5,
        default_timezone: str = "UTC",
    ):
        self.store = store
        self.authority = authority
        self.coordinator = coordinator
        self.collector = collector
        self.clock = clock or RealTimeClock()
        self.event_bus = event_bus
        self.journal = journal
        self.max_merge_attempts = max(1, max_merge_attempts)
        self.default_timezone = default_timezone
        self.logger = get_logger(LogStream.NEGOTIATION)

    # ========================================================================
    # CORE LOOP
    # ========================================================================

    def _execute(
        self,
        transaction_id: str,
        action: Action,
        actor_id: str,
        decide: Decide,
        *,
        merge: bool = False,
        kind: Optional[TransactionKind] = None,
    ) -> Decision:
        attempts = self.max_merge_attempts if merge else 1

        with LogContext(transaction_id):
            for attempt in range(1, attempts + 1):
                record = self.store.get(transaction_id)
                if kind is not None and record.kind is not kind:
                    raise InvalidRequestError(
                        f"{transaction_id} is a {record.kind.value}, not a {kind.value}",
                        transaction_id=transaction_id,
                        current_state=record.state.value,
                        attempted=action.value,
                        actor_id=actor_id,
                        reason="wrong_kind",
                    )
                now = self.clock.now()

                try:
                    decision = decide(record, now)
                except ExpiredWindowError as e:
                    self._log_rejection(e)
                    self._expire_on_read(transaction_id)
                    raise
                except DealError as e:
                    self._log_rejection(e)
                    raise

                if decision.noop:
                    return decision

                try:
                    stored = self.store.compare_and_set(decision.record, decision.expected_version)
                except StaleWriteError as e:
                    if attempt < attempts:
                        self.logger.debug("Version conflict, re-applying", extra={
                            "transaction_id": transaction_id,
                            "action": action.value,
                            "attempt": attempt,
                        })
                        continue
                    e.attempted = action.value
                    e.actor_id = actor_id
                    self._log_rejection(e)
                    raise

                decision.record = stored
                self._publish(decision, now)
                return decision

        # Loop always returns or raises
        raise AssertionError("unreachable")

    def _expire_on_read(self, transaction_id: str) -> None:
        try:
            self.expire(transaction_id)
        except (InvalidTransitionError, StaleWriteError) as e:
            # Someone else (sweeper, other party) got there first
            self.logger.debug("Expire-on-read lost the race", extra={
                "transaction_id": transaction_id,
                "error": str(e),
            })

    def _log_rejection(self, error: DealError) -> None:
        self.logger.info(
            f"Rejected {error.attempted or 'request'}: {error.message}",
            extra={
                "error_code": error.code,
                "transaction_id": error.transaction_id,
                "current_state": error.current_state,
                "attempted": error.attempted,
                "actor_id": error.actor_id,
                "reason": error.reason,
            },
        )

    # ========================================================================
    # JOURNAL + EVENTS (after commit only)
    # ========================================================================

    def _events_for(self, decision: Decision, now: datetime) -> List[Any]:
        record = decision.record
        base = {
            "transaction_id": record.transaction_id,
            "kind": record.kind.value,
            "initiator_id": record.initiator_id,
            "counterparty_id": record.counterparty_id,
            "version": record.version,
            "timestamp": now,
        }
        state_after_action = decision.auto_steps[0].from_state if decision.auto_steps else record.state

        events: List[Any] = [TransitionEvent(
            action=decision.action.value,
            from_state=decision.from_state.value if decision.from_state is not None else None,
            to_state=state_after_action.value,
            actor_id=decision.actor_id,
            details=dict(decision.details),
            **base,
        )]
        for step in decision.auto_steps:
            events.append(TransitionEvent(
                action=step.action.value,
                from_state=step.from_state.value,
                to_state=step.to_state.value,
                actor_id=SYSTEM_ACTOR,
                automatic=True,
                **base,
            ))

        if isinstance(record, Offer) and decision.action is Action.ACCEPT and not record.is_meetup:
            events.append(PaymentRequestedEvent(
                transaction_id=record.transaction_id,
                payer_id=record.initiator_id,
                payee_id=record.counterparty_id,
                article_id=record.article_id,
                amount=record.payable_amount,
                timestamp=now,
            ))
        elif decision.action is Action.REPORT_NO_SHOW:
            events.append(NoShowReportedEvent(
                transaction_id=record.transaction_id,
                reported_by_id=decision.actor_id,
                reported_party_id=record.other_party(decision.actor_id),
                kind=record.kind.value,
                reason=decision.details.get("reason"),
                timestamp=now,
            ))
        elif decision.action is Action.RATE:
            rating: Rating = decision.result
            events.append(RatingRecordedEvent(
                transaction_id=record.transaction_id,
                rater_id=decision.actor_id,
                ratee_id=record.other_party(decision.actor_id),
                score=rating.score,
                comment=rating.comment,
                timestamp=now,
            ))
        return events

    def _publish(self, decision: Decision, now: datetime) -> None:
        """Journal and emit; failures are logged, the committed write stands."""
        events = self._events_for(decision, now)

        if self.journal is not None:
            for event in events:
                try:
                    self.journal.append(event)
                except Exception as e:
                    self.logger.error("Journal append failed after commit", extra={
                        "transaction_id": decision.record.transaction_id,
                        "error": str(e),
                    }, exc_info=True)

        if self.event_bus is not None:
            for event in events:
                try:
                    self.event_bus.emit(event)
                except Exception as e:
                    self.logger.error("Event emit failed after commit", extra={
                        "transaction_id": decision.record.transaction_id,
                        "event_type": type(event).__name__,
                        "error": str(e),
                    }, exc_info=True)

    def _overdue_blocker(self, record: Transaction) -> Optional[Transaction]:
        """Active record holding *record*'s subject whose window already elapsed."""
        now = self.clock.now()
        for other in self.store.list_for_party(record.initiator_id, record.kind, active_only=True):
            if (
                other.counterparty_id == record.counterparty_id
                and other.subject_key == record.subject_key
                and other.is_overdue(now)
            ):
                return other
        return None

    def _create(self, decision: Decision) -> Transaction:
        with LogContext(decision.record.transaction_id):
            try:
                try:
                    stored = self.store.insert(decision.record)
                except DuplicateProposalError:
                    blocker = self._overdue_blocker(decision.record)
                    if blocker is None:
                        raise
                    # Expire on read, then one more try
                    self.logger.info("Expiring overdue transaction blocking a new proposal", extra={
                        "transaction_id": decision.record.transaction_id,
                        "blocking_id": blocker.transaction_id,
                    })
                    self._expire_on_read(blocker.transaction_id)
                    stored = self.store.insert(decision.record)
            except DealError as e:
                self._log_rejection(e)
                raise
            decision.record = stored
            self._publish(decision, stored.created_at)
            self.logger.info(f"{stored.kind.value} proposed", extra={
                "transaction_id": stored.transaction_id,
                "initiator_id": stored.initiator_id,
                "counterparty_id": stored.counterparty_id,
                "subject": stored.subject_key,
            })
            return stored

    def _negotiate(self, transaction_id: str, action: Action, actor_id: str, kind: TransactionKind, **payload) -> Transaction:
        decision = self._execute(
            transaction_id, action, actor_id,
            lambda record, now: self.authority.apply(record, action, actor_id, now, **payload),
            kind=kind,
        )
        return decision.record

    # ========================================================================
    # OFFERS
    # ========================================================================

    def propose_offer(
        self,
        buyer_id: str,
        seller_id: str,
        article_id: str,
        amount: Any,
        *,
        message: Optional[str] = None,
        meetup_location: Optional[str] = None,
        meetup_time: Optional[datetime] = None,
        shipping_estimate: Any = None,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Offer:
        """
        Open a new offer (pending, 48h window by default).

        Naive meetup times are read in the marketplace's default timezone.
        """
        if meetup_time is not None:
            meetup_time = localize(meetup_time, self.default_timezone)
        decision = self.authority.propose_offer(
            buyer_id, seller_id, article_id, amount, self.clock.now(),
            message=message,
            meetup_location=meetup_location,
            meetup_time=meetup_time,
            shipping_estimate=shipping_estimate,
            conversation_id=conversation_id,
            message_id=message_id,
            transaction_id=uuid.uuid4().hex,
        )
        return self._create(decision)

    def accept_offer(self, transaction_id: str, actor_id: str, note: Optional[str] = None) -> Offer:
        return self._negotiate(transaction_id, Action.ACCEPT, actor_id, TransactionKind.OFFER, note=note)

    def reject_offer(self, transaction_id: str, actor_id: str, note: Optional[str] = None) -> Offer:
        return self._negotiate(transaction_id, Action.REJECT, actor_id, TransactionKind.OFFER, note=note)

    def cancel_offer(self, transaction_id: str, actor_id: str, note: Optional[str] = None) -> Offer:
        return self._negotiate(transaction_id, Action.CANCEL, actor_id, TransactionKind.OFFER, note=note)

    def counter_offer(
        self,
        transaction_id: str,
        actor_id: str,
        *,
        amount: Any = None,
        location: Optional[str] = None,
        date_time: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> Offer:
        """
        Counter the current proposal on exactly one dimension.

        amount -> counter_price, location -> counter_location,
        date_time -> counter_time.
        """
        given = [name for name, value in (("amount", amount), ("location", location), ("date_time", date_time))
                 if value is not None]
        if len(given) != 1:
            raise InvalidRequestError(
                "a counter-offer changes exactly one of amount, location, date_time",
                transaction_id=transaction_id,
                attempted="counter",
                actor_id=actor_id,
                reason="counter_dimension",
            )

        if amount is not None:
            return self._negotiate(
                transaction_id, Action.COUNTER_PRICE, actor_id, TransactionKind.OFFER,
                amount=to_decimal(amount, "amount"), note=note,
            )
        if location is not None:
            return self._negotiate(
                transaction_id, Action.COUNTER_LOCATION, actor_id, TransactionKind.OFFER,
                location=location, note=note,
            )
        return self._negotiate(
            transaction_id, Action.COUNTER_TIME, actor_id, TransactionKind.OFFER,
            date_time=localize(date_time, self.default_timezone), note=note,
        )

    def get_offer_by_message(self, conversation_id: str, message_id: str) -> Offer:
        offer = self.store.get_offer_by_message(conversation_id, message_id)
        if offer is None:
            raise TransactionNotFoundError(
                f"No offer for message {conversation_id}/{message_id}",
                reason="unknown_message",
            )
        return offer

    # ========================================================================
    # SWAPS
    # ========================================================================

    @staticmethod
    def _item(value: Union[ItemSnapshot, Mapping[str, Any]]) -> ItemSnapshot:
        if isinstance(value, ItemSnapshot):
            return value
        if isinstance(value, Mapping) and value.get("article_id"):
            price = value.get("price")
            return ItemSnapshot(
                article_id=str(value["article_id"]),
                title=value.get("title", ""),
                price=to_decimal(price, "price") if price is not None else None,
                image_url=value.get("image_url"),
            )
        raise InvalidRequestError(f"invalid item: {value!r}", attempted="propose", reason="invalid_item")

    def propose_swap(
        self,
        initiator_id: str,
        receiver_id: str,
        initiator_item: Union[ItemSnapshot, Mapping[str, Any]],
        receiver_item: Union[ItemSnapshot, Mapping[str, Any]],
        *,
        message: Optional[str] = None,
        cash_top_up: Any = None,
        cash_top_up_payer_id: Optional[str] = None,
        swap_party_id: Optional[str] = None,
    ) -> Swap:
        """Open a new swap proposal. Item snapshots are immutable from here on."""
        top_up = None
        if cash_top_up is not None:
            top_up = CashTopUp(
                amount=to_decimal(cash_top_up, "cash_top_up"),
                payer_id=cash_top_up_payer_id or initiator_id,
            )
        decision = self.authority.propose_swap(
            initiator_id, receiver_id,
            self._item(initiator_item), self._item(receiver_item),
            self.clock.now(),
            message=message,
            cash_top_up=top_up,
            swap_party_id=swap_party_id,
            transaction_id=uuid.uuid4().hex,
        )
        return self._create(decision)

    def accept_swap(self, transaction_id: str, actor_id: str) -> Swap:
        return self._negotiate(transaction_id, Action.ACCEPT, actor_id, TransactionKind.SWAP)

    def decline_swap(self, transaction_id: str, actor_id: str) -> Swap:
        return self._negotiate(transaction_id, Action.DECLINE, actor_id, TransactionKind.SWAP)

    def cancel_swap(self, transaction_id: str, actor_id: str) -> Swap:
        return self._negotiate(transaction_id, Action.CANCEL, actor_id, TransactionKind.SWAP)

    def open_dispute(self, transaction_id: str, actor_id: str, reason: str) -> Swap:
        return self._negotiate(transaction_id, Action.DISPUTE, actor_id, TransactionKind.SWAP, reason=reason)

    def select_exchange_mode(self, transaction_id: str, actor_id: str, mode) -> Swap:
        decision = self._execute(
            transaction_id, Action.SELECT_EXCHANGE_MODE, actor_id,
            lambda record, now: self.coordinator.select_exchange_mode(record, actor_id, mode, now),
            kind=TransactionKind.SWAP,
        )
        return decision.record

    def upload_swap_photos(self, transaction_id: str, actor_id: str, photo_urls: List[str]) -> Swap:
        decision = self._execute(
            transaction_id, Action.UPLOAD_PHOTOS, actor_id,
            lambda record, now: self.coordinator.submit_photos(record, actor_id, photo_urls, now),
            merge=True,
            kind=TransactionKind.SWAP,
        )
        return decision.record

    def confirm_shipping(self, transaction_id: str, actor_id: str, tracking_id: Optional[str] = None) -> Swap:
        decision = self._execute(
            transaction_id, Action.CONFIRM_SHIPPING, actor_id,
            lambda record, now: self.coordinator.confirm_shipping(record, actor_id, now, tracking_id),
            merge=True,
            kind=TransactionKind.SWAP,
        )
        return decision.record

    def confirm_reception(self, transaction_id: str, actor_id: str) -> Swap:
        decision = self._execute(
            transaction_id, Action.CONFIRM_RECEPTION, actor_id,
            lambda record, now: self.coordinator.confirm_reception(record, actor_id, now),
            merge=True,
            kind=TransactionKind.SWAP,
        )
        return decision.record

    def pending_swaps_for(self, user_id: str) -> List[Swap]:
        """Proposals waiting for *user_id* to answer."""
        return [
            s for s in self.store.list_for_party(user_id, TransactionKind.SWAP, active_only=True)
            if s.state is SwapStatus.PROPOSED and s.counterparty_id == user_id
        ]

    def active_swaps_for(self, user_id: str) -> List[Swap]:
        """Accepted swaps still being fulfilled."""
        return [
            s for s in self.store.list_for_party(user_id, TransactionKind.SWAP, active_only=True)
            if s.state in ACTIVE_SWAP_STATES
        ]

    # ========================================================================
    # SHARED FULFILLMENT
    # ========================================================================

    def confirm_meetup(self, transaction_id: str, actor_id: str) -> Transaction:
        """Meetup offers and hand-delivery swaps: both confirmations complete."""
        decision = self._execute(
            transaction_id, Action.CONFIRM_MEETUP, actor_id,
            lambda record, now: self.coordinator.confirm_meetup(record, actor_id, now),
            merge=True,
        )
        return decision.record

    def report_no_show(self, transaction_id: str, actor_id: str, reason: Optional[str] = None) -> Transaction:
        decision = self._execute(
            transaction_id, Action.REPORT_NO_SHOW, actor_id,
            lambda record, now: self.coordinator.report_no_show(record, actor_id, now, reason),
            merge=True,
        )
        return decision.record

    def record_delivery(self, transaction_id: str, shipper_id: str, tracking_id: Optional[str] = None) -> Transaction:
        """Carrier webhook: the parcel sent by *shipper_id* was delivered."""
        decision = self._execute(
            transaction_id, Action.RECORD_DELIVERY, SYSTEM_ACTOR,
            lambda record, now: self.coordinator.record_delivery(record, shipper_id, now, tracking_id),
            merge=True,
        )
        return decision.record

    def complete(self, transaction_id: str, actor_id: str) -> Transaction:
        """Manual completion; fails with IncompleteFulfillmentError until the gate holds."""
        decision = self._execute(
            transaction_id, Action.COMPLETE, actor_id,
            lambda record, now: self.authority.force_complete(record, actor_id, now),
        )
        return decision.record

    # ========================================================================
    # EXPIRY
    # ========================================================================

    def expire(self, transaction_id: str) -> Transaction:
        """
        Expire an overdue negotiation (system actor).

        Idempotent on already-expired records; InvalidTransitionError when
        the record moved on or its window has not elapsed.
        """
        decision = self._execute(
            transaction_id, Action.EXPIRE, SYSTEM_ACTOR,
            lambda record, now: self.authority.apply(record, Action.EXPIRE, SYSTEM_ACTOR, now),
        )
        return decision.record

    # ========================================================================
    # RATINGS
    # ========================================================================

    def rate_transaction(
        self,
        transaction_id: str,
        rater_id: str,
        score,
        comment: Optional[str] = None,
    ) -> Rating:
        """Store one rating per party; a repeat returns the stored rating."""
        decision = self._execute(
            transaction_id, Action.RATE, rater_id,
            lambda record, now: self.collector.collect(record, rater_id, score, now, comment),
            merge=True,
        )
        return decision.result

    def rating_summary(self, user_id: str) -> RatingSummary:
        return self.collector.summary_for(user_id, self.store.list_for_party(user_id))

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get(self, transaction_id: str) -> Transaction:
        return self.store.get(transaction_id)

    def list_for_user(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        active_only: bool = False,
    ) -> List[Transaction]:
        return self.store.list_for_party(user_id, kind, active_only)

    def available_actions(self, transaction_id: str, actor_id: str) -> List[Action]:
        record = self.store.get(transaction_id)
        return self.authority.available_actions(record, actor_id, self.clock.now())

    def history(self, transaction_id: str) -> List[dict]:
        """Journal entries for one transaction (empty without a journal)."""
        if self.journal is None:
            return []
        return self.journal.history_for(transaction_id)
