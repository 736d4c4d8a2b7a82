"""
Transaction store (SQLite + in-memory)

INVARIANT:
    Every write is conditional on the version the writer read. Exactly one
    of N concurrent writers on the same version wins; the rest get
    StaleWriteError and nothing is lost. At most one active transaction
    exists per (kind, initiator, counterparty, subject).

TESTS:
    1. insert stamps version 1; get returns an equal record.
    2. compare_and_set bumps the version; stale and unknown ids are rejected.
    3. Duplicate active proposal rejected; allowed again once closed.
    4. Query helpers (expirable, fulfillment, per party, by message).
    5. SQLite survives reopen.
    6. Concurrent conditional writes: exactly one winner.
"""

import threading
from datetime import timedelta

import pytest

from dealdesk.state import (
    Action,
    DuplicateProposalError,
    OfferStatus,
    SqliteTransactionStore,
    StaleWriteError,
    TransactionKind,
    TransactionNotFoundError,
)

from tests.fixtures.deal_harness import BUYER, MALLORY, SELLER, START, new_offer, new_swap

LATER = START + timedelta(hours=1)


class TestInsertAndGet:

    def test_insert_sets_version(self, store, authority):
        stored = store.insert(new_offer(authority))
        assert stored.version == 1
        assert stored.updated_at == START

        loaded = store.get(stored.transaction_id)
        assert loaded == stored

    def test_unknown_id(self, store):
        with pytest.raises(TransactionNotFoundError):
            store.get("nope")
        assert store.find("nope") is None

    def test_same_id_twice_rejected(self, store, authority):
        offer = new_offer(authority)
        store.insert(offer)
        with pytest.raises(DuplicateProposalError) as exc:
            store.insert(offer)
        assert exc.value.reason == "duplicate_id"


class TestConditionalWrite:

    def test_compare_and_set_bumps_version(self, store, authority):
        stored = store.insert(new_offer(authority))
        decision = authority.apply(stored, Action.ACCEPT, SELLER, LATER)

        written = store.compare_and_set(decision.record, decision.expected_version)

        assert written.version == 2
        assert store.get(stored.transaction_id).state is OfferStatus.ACCEPTED

    def test_stale_version_rejected(self, store, authority):
        stored = store.insert(new_offer(authority))
        first = authority.apply(stored, Action.ACCEPT, SELLER, LATER)
        second = authority.apply(stored, Action.REJECT, SELLER, LATER)

        store.compare_and_set(first.record, first.expected_version)
        with pytest.raises(StaleWriteError) as exc:
            store.compare_and_set(second.record, second.expected_version)

        assert exc.value.expected_version == 1
        assert store.get(stored.transaction_id).state is OfferStatus.ACCEPTED

    def test_unknown_id_on_write(self, store, authority):
        offer = new_offer(authority)
        with pytest.raises(TransactionNotFoundError):
            store.compare_and_set(offer, 1)


class TestUniqueActiveSubject:

    def test_second_active_offer_rejected(self, store, authority):
        store.insert(new_offer(authority))
        with pytest.raises(DuplicateProposalError):
            store.insert(new_offer(authority, amount="30"))

    def test_allowed_after_close(self, store, authority):
        stored = store.insert(new_offer(authority))
        rejected = authority.apply(stored, Action.REJECT, SELLER, LATER)
        store.compare_and_set(rejected.record, rejected.expected_version)

        again = store.insert(new_offer(authority, amount="30"))
        assert again.version == 1

    def test_other_article_is_independent(self, store, authority):
        store.insert(new_offer(authority))
        store.insert(new_offer(authority, article_id="art-2"))
        assert len(store.list_for_party(BUYER)) == 2

    def test_swap_pair_unique(self, store, authority):
        store.insert(new_swap(authority))
        with pytest.raises(DuplicateProposalError):
            store.insert(new_swap(authority))


class TestQueries:

    def test_list_expirable(self, store, authority):
        due = store.insert(new_offer(authority))
        store.insert(new_offer(authority, START + timedelta(hours=10), article_id="art-2"))

        at = START + timedelta(hours=48, minutes=1)
        assert [r.transaction_id for r in store.list_expirable(at)] == [due.transaction_id]
        assert store.list_expirable(START + timedelta(hours=1)) == []

    def test_list_in_fulfillment(self, store, authority):
        stored = store.insert(new_offer(authority))
        store.insert(new_offer(authority, article_id="art-2"))
        decision = authority.apply(stored, Action.ACCEPT, SELLER, LATER)
        store.compare_and_set(decision.record, decision.expected_version)

        assert [r.transaction_id for r in store.list_in_fulfillment()] == [stored.transaction_id]

    def test_list_for_party_filters(self, store, authority):
        offer = store.insert(new_offer(authority))
        store.insert(new_swap(authority))
        rejected = authority.apply(offer, Action.REJECT, SELLER, LATER)
        store.compare_and_set(rejected.record, rejected.expected_version)

        assert len(store.list_for_party(SELLER)) == 1
        assert store.list_for_party(SELLER, active_only=True) == []
        assert store.list_for_party(BUYER, TransactionKind.SWAP) == []
        assert store.list_for_party(MALLORY) == []

    def test_get_offer_by_message(self, store, authority):
        stored = store.insert(new_offer(authority, conversation_id="c-9", message_id="m-3"))
        found = store.get_offer_by_message("c-9", "m-3")
        assert found.transaction_id == stored.transaction_id
        assert store.get_offer_by_message("c-9", "m-4") is None


class TestSqliteDurability:

    def test_reopen_keeps_records(self, tmp_path, clock, authority):
        db = tmp_path / "deals.db"
        first = SqliteTransactionStore(db, clock=clock)
        stored = first.insert(new_offer(authority))
        first.close()

        second = SqliteTransactionStore(db, clock=clock)
        try:
            loaded = second.get(stored.transaction_id)
            assert loaded == stored
        finally:
            second.close()

    def test_unique_index_survives_reopen(self, tmp_path, clock, authority):
        db = tmp_path / "deals.db"
        first = SqliteTransactionStore(db, clock=clock)
        first.insert(new_offer(authority))
        first.close()

        second = SqliteTransactionStore(db, clock=clock)
        try:
            with pytest.raises(DuplicateProposalError):
                second.insert(new_offer(authority))
        finally:
            second.close()


@pytest.mark.race
class TestConcurrentWriters:

    def test_exactly_one_conditional_write_wins(self, store, authority):
        stored = store.insert(new_offer(authority))
        n = 8
        barrier = threading.Barrier(n)
        wins, stale = [], []
        lock = threading.Lock()

        def writer(i):
            action = Action.ACCEPT if i % 2 == 0 else Action.REJECT
            decision = authority.apply(stored, action, SELLER, LATER)
            barrier.wait()
            try:
                store.compare_and_set(decision.record, decision.expected_version)
                with lock:
                    wins.append(action)
            except StaleWriteError:
                with lock:
                    stale.append(action)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(wins) == 1
        assert len(stale) == n - 1
        final = store.get(stored.transaction_id)
        assert final.version == 2
        assert final.state.value == {Action.ACCEPT: "accepted", Action.REJECT: "rejected"}[wins[0]]
