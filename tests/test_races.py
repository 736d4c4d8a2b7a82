"""
Concurrent requests against one transaction

INVARIANT:
    Two conflicting decisions never both commit. Two per-party steps that
    happen at the same time both land, and the automatic move they unlock
    happens exactly once.

TESTS:
    1. Accept vs reject from racing threads: one winner.
    2. Accept vs proposer cancel: one winner.
    3. Simultaneous reception confirmations: both recorded, one completion.
    4. Simultaneous meetup confirmations: both recorded, one completion.
    5. Same proposal submitted twice at once: one insert.
"""

import threading

import pytest

from dealdesk.state import DealError, OfferStatus, SwapStatus

from tests.fixtures.deal_harness import ALICE, BIKE, BOB, BUYER, GUITAR, SELLER

pytestmark = pytest.mark.race


def _race(*calls):
    """Run each call in its own thread, released together. Returns (results, errors)."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []
    lock = threading.Lock()

    def run(call):
        barrier.wait()
        try:
            value = call()
            with lock:
                results.append(value)
        except DealError as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results, errors


class TestConflictingDecisions:

    def test_accept_vs_reject(self, engine):
        offer = engine.propose_offer(BUYER, SELLER, "art-1", "25")
        tid = offer.transaction_id

        results, errors = _race(
            lambda: engine.accept_offer(tid, SELLER),
            lambda: engine.reject_offer(tid, SELLER),
        )

        assert len(results) == 1
        assert len(errors) == 1
        final = engine.get(tid)
        assert final.state is results[0].state
        assert final.version == 2

    def test_accept_vs_cancel(self, engine, recorder):
        offer = engine.propose_offer(BUYER, SELLER, "art-1", "25")
        tid = offer.transaction_id

        results, errors = _race(
            lambda: engine.accept_offer(tid, SELLER),
            lambda: engine.cancel_offer(tid, BUYER),
        )

        assert len(results) == 1
        assert engine.get(tid).state in (OfferStatus.ACCEPTED, OfferStatus.CANCELLED)
        # the loser left no event behind
        assert len(recorder.actions(tid)) == 2


class TestMergingSteps:

    def _shipping_swap(self, engine):
        swap = engine.propose_swap(ALICE, BOB, GUITAR, BIKE)
        tid = swap.transaction_id
        engine.accept_swap(tid, BOB)
        engine.select_exchange_mode(tid, ALICE, "shipping")
        engine.upload_swap_photos(tid, ALICE, ["a"])
        engine.upload_swap_photos(tid, BOB, ["b"])
        return tid

    def test_simultaneous_reception(self, engine, recorder):
        tid = self._shipping_swap(engine)

        results, errors = _race(
            lambda: engine.confirm_reception(tid, ALICE),
            lambda: engine.confirm_reception(tid, BOB),
        )

        assert errors == []
        assert len(results) == 2
        final = engine.get(tid)
        assert final.state is SwapStatus.COMPLETED
        assert len(final.received_at) == 2
        completions = [e for e in recorder.transitions(tid) if e.automatic and e.action == "complete"]
        assert len(completions) == 1

    def test_simultaneous_photos(self, engine):
        swap = engine.propose_swap(ALICE, BOB, GUITAR, BIKE)
        tid = swap.transaction_id
        engine.accept_swap(tid, BOB)
        engine.select_exchange_mode(tid, BOB, "shipping")

        _, errors = _race(
            lambda: engine.upload_swap_photos(tid, ALICE, ["a"]),
            lambda: engine.upload_swap_photos(tid, BOB, ["b"]),
        )

        assert errors == []
        assert engine.get(tid).state is SwapStatus.SHIPPING

    def test_simultaneous_meetup(self, engine, recorder):
        swap = engine.propose_swap(ALICE, BOB, GUITAR, BIKE)
        tid = swap.transaction_id
        engine.accept_swap(tid, BOB)
        engine.select_exchange_mode(tid, BOB, "hand_delivery")

        _, errors = _race(
            lambda: engine.confirm_meetup(tid, ALICE),
            lambda: engine.confirm_meetup(tid, BOB),
        )

        assert errors == []
        final = engine.get(tid)
        assert final.state is SwapStatus.COMPLETED
        assert len(final.meetup_confirmations) == 2
        assert recorder.actions(tid).count("complete") == 1


class TestDuplicateProposals:

    def test_one_insert_wins(self, engine):
        results, errors = _race(
            lambda: engine.propose_offer(BUYER, SELLER, "art-1", "25"),
            lambda: engine.propose_offer(BUYER, SELLER, "art-1", "26"),
        )

        assert len(results) == 1
        assert len(errors) == 1
        assert errors[0].code == "duplicate_proposal"
        assert len(engine.list_for_user(BUYER, active_only=True)) == 1
