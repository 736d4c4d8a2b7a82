"""
Deal engine: offers

INVARIANT:
    Every request reads fresh, decides, commits conditionally and only
    then journals/emits. Rejected requests leave no trace besides a log
    line. An overdue offer is expired the moment someone touches it.

TESTS:
    1. Propose/accept/reject/cancel/counter happy paths + events.
    2. Role and state guards.
    3. Expire-on-read.
    4. Meetup times localized; counters on one dimension only.
    5. Delivery and meetup completion, manual complete gate.
    6. Ratings, history, lookups.
    7. Journal/bus failure after commit does not undo the write.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from dealdesk.events import PaymentRequestedEvent, RatingRecordedEvent, TransitionEvent
from dealdesk.state import (
    Action,
    DuplicateProposalError,
    ExpiredWindowError,
    IncompleteFulfillmentError,
    InvalidRequestError,
    InvalidTransitionError,
    OfferStatus,
    PartyRole,
    TransactionKind,
    TransactionNotFoundError,
    UnauthorizedActorError,
)

from tests.fixtures.deal_harness import BUYER, MALLORY, SELLER, START

# Europe/Madrid is UTC+1 in early March
MEETUP_LOCAL = datetime(2026, 3, 5, 18, 0)
MEETUP_UTC = datetime(2026, 3, 5, 17, 0, tzinfo=timezone.utc)


def _propose(engine, **kwargs):
    params = dict(article_id="art-1", amount="25.00")
    params.update(kwargs)
    return engine.propose_offer(BUYER, SELLER, params.pop("article_id"), params.pop("amount"), **params)


def _meetup(engine, **kwargs):
    return _propose(engine, meetup_location="Plaza Mayor", meetup_time=MEETUP_LOCAL, **kwargs)


class TestNegotiation:

    def test_propose(self, engine, recorder):
        offer = _propose(engine, message="is it still available?", conversation_id="c-1", message_id="m-1")

        assert offer.version == 1
        assert offer.state is OfferStatus.PENDING
        assert offer.expires_at == START + timedelta(hours=48)
        assert offer.awaiting_role is PartyRole.COUNTERPARTY
        [event] = recorder.transitions(offer.transaction_id)
        assert (event.action, event.from_state, event.to_state) == ("propose", None, "pending")

    def test_accept_requests_payment(self, engine, recorder):
        offer = _propose(engine, shipping_estimate="3.50")

        accepted = engine.accept_offer(offer.transaction_id, SELLER)

        assert accepted.state is OfferStatus.ACCEPTED
        assert accepted.version == 2
        assert accepted.accepted_at == START
        [payment] = recorder.of_type(PaymentRequestedEvent)
        assert payment.payer_id == BUYER
        assert payment.payee_id == SELLER
        assert payment.amount == Decimal("28.50")

    def test_meetup_accept_requests_no_payment(self, engine, recorder):
        offer = _meetup(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        assert recorder.of_type(PaymentRequestedEvent) == []

    def test_reject(self, engine):
        offer = _propose(engine)
        rejected = engine.reject_offer(offer.transaction_id, SELLER, note="too low")
        assert rejected.state is OfferStatus.REJECTED
        assert rejected.negotiation[-1].note == "too low"
        assert not rejected.is_active

    def test_cancel_by_proposer(self, engine):
        offer = _propose(engine)
        assert engine.cancel_offer(offer.transaction_id, BUYER).state is OfferStatus.CANCELLED

    def test_counter_flips_turn(self, engine, recorder):
        offer = _propose(engine)

        countered = engine.counter_offer(offer.transaction_id, SELLER, amount="30")

        assert countered.state is OfferStatus.COUNTER_PRICE
        assert countered.amount == Decimal("30")
        assert countered.awaiting_role is PartyRole.INITIATOR
        entry = countered.negotiation[-1]
        assert (entry.previous_value, entry.new_value) == ("25.00", "30")
        assert recorder.transitions(offer.transaction_id)[-1].details["new_value"] == "30"

        # seller is now the proposer: only the buyer answers
        with pytest.raises(UnauthorizedActorError):
            engine.accept_offer(offer.transaction_id, SELLER)
        assert engine.accept_offer(offer.transaction_id, BUYER).state is OfferStatus.ACCEPTED

    def test_counter_resets_window(self, engine, clock):
        offer = _propose(engine)
        clock.advance(hours=40)
        countered = engine.counter_offer(offer.transaction_id, SELLER, amount="30")
        assert countered.expires_at == START + timedelta(hours=88)

    def test_counter_time_localized(self, engine):
        offer = _meetup(engine)
        assert offer.meetup.date_time == MEETUP_UTC

        countered = engine.counter_offer(offer.transaction_id, SELLER, date_time=datetime(2026, 3, 6, 10, 30))
        assert countered.state is OfferStatus.COUNTER_TIME
        assert countered.meetup.date_time == datetime(2026, 3, 6, 9, 30, tzinfo=timezone.utc)
        assert countered.meetup.proposed_by is PartyRole.COUNTERPARTY

    def test_counter_location(self, engine):
        offer = _meetup(engine)
        countered = engine.counter_offer(offer.transaction_id, SELLER, location="Retiro")
        assert countered.meetup.location == "Retiro"
        assert countered.state is OfferStatus.COUNTER_LOCATION

    @pytest.mark.parametrize("kwargs", [{}, {"amount": "30", "location": "Retiro"}])
    def test_counter_needs_one_dimension(self, engine, kwargs):
        offer = _meetup(engine)
        with pytest.raises(InvalidRequestError) as exc:
            engine.counter_offer(offer.transaction_id, SELLER, **kwargs)
        assert exc.value.reason == "counter_dimension"

    def test_location_counter_on_shipped_offer(self, engine):
        offer = _propose(engine)
        with pytest.raises(InvalidTransitionError) as exc:
            engine.counter_offer(offer.transaction_id, SELLER, location="Retiro")
        assert exc.value.reason == "not_a_meetup_offer"


class TestGuards:

    def test_proposer_cannot_accept(self, engine):
        offer = _propose(engine)
        with pytest.raises(UnauthorizedActorError) as exc:
            engine.accept_offer(offer.transaction_id, BUYER)
        assert exc.value.reason == "requires_responder"

    def test_responder_cannot_cancel(self, engine):
        offer = _propose(engine)
        with pytest.raises(UnauthorizedActorError) as exc:
            engine.cancel_offer(offer.transaction_id, SELLER)
        assert exc.value.reason == "requires_proposer"

    def test_outsider(self, engine):
        offer = _propose(engine)
        with pytest.raises(UnauthorizedActorError) as exc:
            engine.reject_offer(offer.transaction_id, MALLORY)
        assert exc.value.reason == "not_a_party"

    def test_closed_offer_is_final(self, engine):
        offer = _propose(engine)
        engine.reject_offer(offer.transaction_id, SELLER)
        with pytest.raises(InvalidTransitionError) as exc:
            engine.accept_offer(offer.transaction_id, SELLER)
        assert exc.value.reason == "illegal_from_state"
        assert exc.value.current_state == "rejected"

    def test_rejection_emits_nothing(self, engine, recorder, journal):
        offer = _propose(engine)
        before = len(recorder.events)
        with pytest.raises(UnauthorizedActorError):
            engine.accept_offer(offer.transaction_id, BUYER)
        assert len(recorder.events) == before
        assert len(journal.history_for(offer.transaction_id)) == 1
        assert engine.get(offer.transaction_id).version == 1

    def test_duplicate_active_offer(self, engine):
        _propose(engine)
        with pytest.raises(DuplicateProposalError):
            _propose(engine, amount="27")

    def test_wrong_kind(self, engine):
        offer = _propose(engine)
        with pytest.raises(InvalidRequestError) as exc:
            engine.accept_swap(offer.transaction_id, SELLER)
        assert exc.value.reason == "wrong_kind"

    def test_unknown_transaction(self, engine):
        with pytest.raises(TransactionNotFoundError):
            engine.accept_offer("missing", SELLER)

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_invalid_amount(self, engine, amount):
        with pytest.raises(InvalidRequestError):
            _propose(engine, amount=amount)

    def test_same_party(self, engine):
        with pytest.raises(InvalidRequestError) as exc:
            engine.propose_offer(BUYER, BUYER, "art-1", "10")
        assert exc.value.reason == "same_party"


class TestExpireOnRead:

    def test_late_accept_expires(self, engine, clock, recorder):
        offer = _propose(engine)
        clock.advance(hours=48)

        with pytest.raises(ExpiredWindowError):
            engine.accept_offer(offer.transaction_id, SELLER)

        stored = engine.get(offer.transaction_id)
        assert stored.state is OfferStatus.EXPIRED
        assert recorder.actions(offer.transaction_id) == ["propose", "expire"]

    def test_expire_is_idempotent(self, engine, clock):
        offer = _propose(engine)
        clock.advance(hours=49)
        engine.expire(offer.transaction_id)
        again = engine.expire(offer.transaction_id)
        assert again.state is OfferStatus.EXPIRED
        assert again.version == 2

    def test_expire_before_due(self, engine):
        offer = _propose(engine)
        with pytest.raises(InvalidTransitionError) as exc:
            engine.expire(offer.transaction_id)
        assert exc.value.reason == "not_due"

    def test_expired_slot_frees_subject(self, engine, clock):
        offer = _propose(engine)
        clock.advance(hours=49)
        engine.expire(offer.transaction_id)
        assert _propose(engine, amount="20").state is OfferStatus.PENDING

    def test_overdue_offer_does_not_block_new_proposal(self, engine, clock, recorder):
        stale = _propose(engine)
        clock.advance(hours=49)

        fresh = _propose(engine, amount="22")

        assert fresh.state is OfferStatus.PENDING
        assert fresh.amount == Decimal("22")
        assert engine.get(stale.transaction_id).state is OfferStatus.EXPIRED
        assert recorder.actions(stale.transaction_id) == ["propose", "expire"]
        assert [o.transaction_id for o in engine.list_for_user(BUYER, active_only=True)] == [fresh.transaction_id]

    def test_open_offer_still_blocks_before_deadline(self, engine, clock):
        blocker = _propose(engine)
        clock.advance(hours=47)

        with pytest.raises(DuplicateProposalError):
            _propose(engine, amount="22")
        assert engine.get(blocker.transaction_id).state is OfferStatus.PENDING


class TestFulfillment:

    def test_delivery_completes(self, engine, recorder):
        offer = _propose(engine)
        engine.accept_offer(offer.transaction_id, SELLER)

        done = engine.record_delivery(offer.transaction_id, SELLER, tracking_id="TRK-9")

        assert done.state is OfferStatus.ACCEPTED
        assert done.is_completed
        assert not done.is_active
        last_two = recorder.transitions(offer.transaction_id)[-2:]
        assert [(e.action, e.automatic) for e in last_two] == [("record_delivery", False), ("complete", True)]

    def test_meetup_completion(self, engine, clock, recorder):
        offer = _meetup(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        clock.set_time(MEETUP_UTC + timedelta(minutes=10))

        engine.confirm_meetup(offer.transaction_id, SELLER)
        done = engine.confirm_meetup(offer.transaction_id, BUYER)

        assert done.completed_at == MEETUP_UTC + timedelta(minutes=10)
        assert recorder.actions(offer.transaction_id)[-1] == "complete"

    def test_no_show_keeps_state(self, engine, clock):
        offer = _meetup(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        clock.set_time(MEETUP_UTC + timedelta(hours=1))

        after = engine.report_no_show(offer.transaction_id, BUYER, reason="nobody came")

        assert after.state is OfferStatus.ACCEPTED
        assert len(after.no_show_reports) == 1

    def test_manual_complete_gate(self, engine):
        offer = _meetup(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        with pytest.raises(IncompleteFulfillmentError):
            engine.complete(offer.transaction_id, BUYER)


class TestRatingsAndQueries:

    def _completed(self, engine):
        offer = _propose(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        engine.record_delivery(offer.transaction_id, SELLER)
        return offer.transaction_id

    def test_rate_once(self, engine, recorder):
        tid = self._completed(engine)

        rating = engine.rate_transaction(tid, BUYER, 5, comment="fast shipping")
        repeat = engine.rate_transaction(tid, BUYER, 1)

        assert rating.score == 5
        assert repeat == rating
        assert len(recorder.of_type(RatingRecordedEvent)) == 1
        assert engine.rating_summary(SELLER).average == 5.0
        assert engine.rating_summary(BUYER).count == 0

    def test_rate_before_completion(self, engine):
        offer = _propose(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        with pytest.raises(InvalidTransitionError):
            engine.rate_transaction(offer.transaction_id, BUYER, 4)

    def test_history(self, engine):
        tid = self._completed(engine)
        actions = [e["action"] for e in engine.history(tid) if e["event_type"] == "TRANSITION"]
        assert actions == ["propose", "accept", "record_delivery", "complete"]
        assert {e["event_type"] for e in engine.history(tid)} >= {"TRANSITION", "PAYMENT_REQUESTED"}

    def test_get_offer_by_message(self, engine):
        offer = _propose(engine, conversation_id="c-1", message_id="m-7")
        assert engine.get_offer_by_message("c-1", "m-7").transaction_id == offer.transaction_id
        with pytest.raises(TransactionNotFoundError) as exc:
            engine.get_offer_by_message("c-1", "m-8")
        assert exc.value.reason == "unknown_message"

    def test_available_actions(self, engine):
        offer = _propose(engine)
        seller_actions = engine.available_actions(offer.transaction_id, SELLER)
        assert {Action.ACCEPT, Action.REJECT, Action.COUNTER_PRICE} <= set(seller_actions)
        assert Action.CANCEL not in seller_actions
        assert engine.available_actions(offer.transaction_id, BUYER) == [Action.CANCEL]

    def test_list_for_user(self, engine):
        offer = _propose(engine)
        _propose(engine, article_id="art-2")
        engine.reject_offer(offer.transaction_id, SELLER)

        assert len(engine.list_for_user(BUYER, TransactionKind.OFFER)) == 2
        assert len(engine.list_for_user(BUYER, active_only=True)) == 1


class TestPublishAfterCommit:

    def test_journal_failure_keeps_write(self, engine, journal, monkeypatch, recorder):
        offer = _propose(engine)

        def broken(entry):
            raise OSError("disk full")

        monkeypatch.setattr(journal, "append", broken)
        accepted = engine.accept_offer(offer.transaction_id, SELLER)

        assert accepted.state is OfferStatus.ACCEPTED
        assert engine.get(offer.transaction_id).state is OfferStatus.ACCEPTED
        # the bus still gets the event
        assert recorder.actions(offer.transaction_id)[-1] == "accept"

    def test_bus_failure_keeps_write(self, engine, bus, monkeypatch):
        offer = _propose(engine)

        def broken(event):
            raise RuntimeError("bus down")

        monkeypatch.setattr(bus, "emit", broken)
        engine.accept_offer(offer.transaction_id, SELLER)

        assert engine.get(offer.transaction_id).state is OfferStatus.ACCEPTED
        history = engine.history(offer.transaction_id)
        assert [e["action"] for e in history if e["event_type"] == "TRANSITION"] == ["propose", "accept"]

    def test_no_bus_no_journal(self, make_engine, store):
        engine = make_engine(store)
        engine.event_bus = None
        engine.journal = None
        offer = _propose(engine)
        assert engine.accept_offer(offer.transaction_id, SELLER).state is OfferStatus.ACCEPTED
        assert engine.history(offer.transaction_id) == []

    def test_events_carry_committed_version(self, engine, recorder):
        offer = _propose(engine)
        engine.accept_offer(offer.transaction_id, SELLER)
        versions = [e.version for e in recorder.of_type(TransitionEvent)]
        assert versions == [1, 2]
