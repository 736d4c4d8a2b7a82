# tests/conftest.py
from __future__ import annotations

from datetime import timedelta

import pytest

from dealdesk.engine import DealEngine
from dealdesk.events import DealEventBus
from dealdesk.fulfillment import FulfillmentCoordinator
from dealdesk.ratings import RatingCollector
from dealdesk.state import (
    MemoryTransactionStore,
    SqliteTransactionStore,
    TransactionLog,
    TransitionAuthority,
)
from dealdesk.time import SimulatedClock

from tests.fixtures.deal_harness import START, EventRecorder


@pytest.fixture
def clock():
    return SimulatedClock(START)


@pytest.fixture
def authority():
    return TransitionAuthority(offer_ttl=timedelta(hours=48), swap_ttl=timedelta(hours=72))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path, clock):
    if request.param == "memory":
        s = MemoryTransactionStore(clock=clock)
    else:
        s = SqliteTransactionStore(tmp_path / "deals.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def sqlite_store(tmp_path, clock):
    s = SqliteTransactionStore(tmp_path / "deals.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def journal(tmp_path, clock):
    j = TransactionLog(tmp_path / "transitions.log", clock=clock)
    yield j
    j.close()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def bus(recorder):
    b = DealEventBus(synchronous=True)
    recorder.attach(b)
    b.start()
    yield b
    b.stop()


def _build_engine(store, authority, clock, bus, journal, **kwargs):
    kwargs.setdefault("max_merge_attempts", 5)
    kwargs.setdefault("default_timezone", "Europe/Madrid")
    return DealEngine(
        store,
        authority,
        FulfillmentCoordinator(authority),
        RatingCollector(authority),
        clock,
        event_bus=bus,
        journal=journal,
        **kwargs,
    )


@pytest.fixture
def engine(store, authority, clock, bus, journal):
    return _build_engine(store, authority, clock, bus, journal)


@pytest.fixture
def make_engine(authority, clock, bus, journal):
    """Engine factory for tests that need a specific store or settings."""
    def _make(store, **kwargs):
        return _build_engine(store, authority, clock, bus, journal, **kwargs)
    return _make
