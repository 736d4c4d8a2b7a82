"""
Event bus + notification relay

INVARIANT:
    Handlers run in isolation: one failing handler (or one failing
    recipient) never prevents the others from running. Party actions
    notify the other party; automatic/system transitions notify both.

TESTS:
    1. Bus dispatches to subscribed handlers (sync and threaded).
    2. Emit before start / subscribe after start rejected.
    3. Handler failure counted, other handlers still run.
    4. recipients_for routing.
    5. Relay isolates emitter failures per recipient.
"""

import pytest

from dealdesk.events import (
    DealEventBus,
    FulfillmentStalledEvent,
    NoShowReportedEvent,
    NotificationRelay,
    TransitionEvent,
    recipients_for,
)
from dealdesk.state import SYSTEM_ACTOR

from tests.fixtures.deal_harness import BUYER, RecordingEmitter, SELLER, START


def _transition(actor=SELLER, automatic=False, **kwargs):
    params = dict(
        transaction_id="t-1",
        kind="offer",
        action="accept",
        from_state="pending",
        to_state="accepted",
        actor_id=actor,
        initiator_id=BUYER,
        counterparty_id=SELLER,
        version=2,
        automatic=automatic,
        timestamp=START,
    )
    params.update(kwargs)
    return TransitionEvent(**params)


class TestDealEventBus:

    def test_synchronous_dispatch(self):
        bus = DealEventBus(synchronous=True)
        seen = []
        bus.subscribe(TransitionEvent, seen.append)
        bus.start()
        try:
            bus.emit(_transition())
        finally:
            bus.stop()
        assert len(seen) == 1
        assert bus.get_stats()["events_processed"] == 1

    def test_threaded_dispatch(self):
        bus = DealEventBus(daemon=True)
        seen = []
        bus.subscribe(TransitionEvent, seen.append)
        bus.start()
        try:
            for _ in range(5):
                bus.emit(_transition())
            assert bus.wait_until_idle(timeout=5.0)
        finally:
            bus.stop()
        assert len(seen) == 5

    def test_emit_requires_running_bus(self):
        bus = DealEventBus(synchronous=True)
        with pytest.raises(RuntimeError):
            bus.emit(_transition())

    def test_subscribe_after_start_rejected(self):
        bus = DealEventBus(synchronous=True)
        bus.start()
        try:
            with pytest.raises(RuntimeError):
                bus.subscribe(TransitionEvent, lambda e: None)
        finally:
            bus.stop()

    def test_failing_handler_isolated(self):
        bus = DealEventBus(synchronous=True)
        seen = []

        def broken(event):
            raise ValueError("boom")

        bus.subscribe(TransitionEvent, broken)
        bus.subscribe(TransitionEvent, seen.append)
        bus.start()
        try:
            bus.emit(_transition())
        finally:
            bus.stop()

        assert len(seen) == 1
        assert bus.get_stats()["events_failed"] == 1

    def test_queue_full_drops(self):
        bus = DealEventBus(max_queue_size=1, daemon=True)
        # running flag without a consumer thread: queue fills up
        bus._running = True
        try:
            bus.emit(_transition())
            bus.emit(_transition())
        finally:
            bus._running = False
        assert bus.get_stats()["events_dropped"] == 1


class TestRouting:

    def test_party_action_notifies_other_party(self):
        assert recipients_for(_transition(actor=SELLER)) == [BUYER]
        assert recipients_for(_transition(actor=BUYER)) == [SELLER]

    def test_automatic_notifies_both(self):
        assert recipients_for(_transition(actor=SELLER, automatic=True)) == [BUYER, SELLER]

    def test_system_notifies_both(self):
        assert recipients_for(_transition(actor=SYSTEM_ACTOR, action="expire")) == [BUYER, SELLER]


class TestNotificationRelay:

    def _bus_with(self, relay):
        bus = DealEventBus(synchronous=True)
        relay.attach(bus)
        bus.start()
        return bus

    def test_transition_notice(self):
        emitter = RecordingEmitter()
        relay = NotificationRelay(emitter)
        bus = self._bus_with(relay)
        try:
            bus.emit(_transition(actor=SELLER))
        finally:
            bus.stop()

        [notice] = emitter.notices
        assert notice.recipient_id == BUYER
        assert notice.new_state == "accepted"
        assert notice.previous_state == "pending"
        assert relay.sent == 1

    def test_recipient_failure_isolated(self):
        emitter = RecordingEmitter(fail_for=BUYER)
        relay = NotificationRelay(emitter)
        bus = self._bus_with(relay)
        try:
            bus.emit(_transition(actor=SYSTEM_ACTOR, action="expire", to_state="expired"))
        finally:
            bus.stop()

        assert [n.recipient_id for n in emitter.notices] == [SELLER]
        assert relay.failed == 1
        assert relay.sent == 1

    def test_no_show_and_stalled_reach_both(self):
        emitter = RecordingEmitter()
        relay = NotificationRelay(emitter)
        bus = self._bus_with(relay)
        try:
            bus.emit(NoShowReportedEvent(
                transaction_id="t-1", reported_by_id=BUYER, reported_party_id=SELLER, timestamp=START,
            ))
            bus.emit(FulfillmentStalledEvent(
                transaction_id="t-1", kind="offer", state="accepted",
                initiator_id=BUYER, counterparty_id=SELLER,
                last_activity=START, idle_hours=400.0, timestamp=START,
            ))
        finally:
            bus.stop()

        assert sorted(n.recipient_id for n in emitter.notices) == [BUYER, BUYER, SELLER, SELLER]
        assert {n.action for n in emitter.notices} == {"report_no_show", "fulfillment_stalled"}
