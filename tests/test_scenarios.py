"""
End-to-end marketplace scenarios

INVARIANT:
    A transaction walks its lifecycle through the public engine API only,
    and the journal tells the same story as the stored record.

TESTS:
    1. Meetup offer at the park tomorrow 17:00: accept, both confirm.
    2. Short-window offer swept to expired; late accept rejected.
    3. Swap guitar(30) <-> bike(28), shipping path through ratings.
    4. Reception confirmed in either order completes the swap once.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from dealdesk.engine import DealEngine
from dealdesk.fulfillment import FulfillmentCoordinator
from dealdesk.ratings import RatingCollector
from dealdesk.state import (
    InvalidTransitionError,
    ItemSnapshot,
    OfferStatus,
    SwapStatus,
    TransitionAuthority,
)
from dealdesk.sweeper import ExpirySweeper

from tests.fixtures.deal_harness import ALICE, BOB, BUYER, SELLER, START


class TestMeetupOffer:

    def test_park_tomorrow(self, engine, clock, recorder):
        offer = engine.propose_offer(
            BUYER, SELLER, "art-lamp", "40",
            meetup_location="Parque del Oeste",
            meetup_time=datetime(2026, 3, 3, 17, 0),
        )
        engine.accept_offer(offer.transaction_id, SELLER)

        clock.set_time(datetime(2026, 3, 3, 16, 10, tzinfo=timezone.utc))
        engine.confirm_meetup(offer.transaction_id, BUYER)
        done = engine.confirm_meetup(offer.transaction_id, SELLER)

        assert done.state is OfferStatus.ACCEPTED
        assert done.completed_at == datetime(2026, 3, 3, 16, 10, tzinfo=timezone.utc)
        assert done.no_show_reports == []
        assert done.meetup.date_time == datetime(2026, 3, 3, 16, 0, tzinfo=timezone.utc)
        assert recorder.actions(offer.transaction_id) == [
            "propose", "accept", "confirm_meetup", "confirm_meetup", "complete",
        ]


class TestShortWindow:

    def test_swept_then_late_accept(self, store, clock, bus, journal):
        authority = TransitionAuthority(offer_ttl=timedelta(hours=1))
        engine = DealEngine(
            store, authority, FulfillmentCoordinator(authority), RatingCollector(authority), clock,
            event_bus=bus, journal=journal,
        )
        offer = engine.propose_offer(BUYER, SELLER, "art-1", "25")
        clock.advance(hours=2)

        assert ExpirySweeper(engine).sweep().expired == 1

        with pytest.raises(InvalidTransitionError) as exc:
            engine.accept_offer(offer.transaction_id, SELLER)
        assert exc.value.current_state == "expired"
        assert [e["to_state"] for e in engine.history(offer.transaction_id)] == ["pending", "expired"]


class TestSwapThroughRatings:

    GUITAR_30 = ItemSnapshot(article_id="art-a", title="Guitar", price=Decimal("30"))
    BIKE_28 = ItemSnapshot(article_id="art-b", title="Bike", price=Decimal("28"))

    def _ship(self, engine, clock):
        swap = engine.propose_swap(ALICE, BOB, self.GUITAR_30, self.BIKE_28, cash_top_up=None)
        tid = swap.transaction_id
        clock.advance(hours=3)
        engine.accept_swap(tid, BOB)
        engine.select_exchange_mode(tid, BOB, "shipping")
        engine.upload_swap_photos(tid, BOB, ["https://img/bike-1.jpg", "https://img/bike-2.jpg"])
        engine.upload_swap_photos(tid, ALICE, ["https://img/guitar-1.jpg"])
        clock.advance(days=1)
        engine.confirm_shipping(tid, ALICE, tracking_id="ES-111")
        engine.confirm_shipping(tid, BOB, tracking_id="ES-222")
        clock.advance(days=2)
        return tid

    def test_happy_path(self, engine, clock):
        tid = self._ship(engine, clock)

        engine.confirm_reception(tid, ALICE)
        done = engine.confirm_reception(tid, BOB)
        assert done.state is SwapStatus.COMPLETED
        assert done.completed_at == START + timedelta(days=3, hours=3)

        engine.rate_transaction(tid, ALICE, 5, comment="bike as described")
        engine.rate_transaction(tid, BOB, 4)

        final = engine.get(tid)
        assert len(final.ratings) == 2
        assert engine.rating_summary(ALICE).average == 4.0
        assert engine.rating_summary(BOB).average == 5.0
        assert [e["to_state"] for e in engine.history(tid) if e.get("automatic")] == [
            "photos_pending", "shipping", "completed",
        ]

    @pytest.mark.parametrize("first, second", [(ALICE, BOB), (BOB, ALICE)])
    def test_reception_order_does_not_matter(self, engine, clock, recorder, first, second):
        tid = self._ship(engine, clock)

        assert engine.confirm_reception(tid, first).state is SwapStatus.SHIPPING
        assert engine.confirm_reception(tid, second).state is SwapStatus.COMPLETED
        assert recorder.actions(tid).count("complete") == 1
