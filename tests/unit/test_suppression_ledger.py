"""
Unit tests for the suppression ledger.

Tests create-if-absent semantics, TTL expiry, concurrent acquisition and
transient error handling.
"""

import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from alert_engine.models import SuppressionRecord
from alert_engine.services.exceptions import TransientInfraError
from alert_engine.services.suppression_ledger import SuppressionLedger, compute_dedup_key


KEY = compute_dedup_key(
    "budget_warning", "bdg_groceries", None,
    datetime(2026, 10, 1), datetime(2026, 10, 31, 23, 59, 59), 90,
)


class TestDedupKey:
    """Tests for compute_dedup_key()."""

    def test_deterministic(self):
        args = ("budget_exceeded", "bdg_1", None, datetime(2026, 10, 1), datetime(2026, 11, 1), 100)
        assert compute_dedup_key(*args) == compute_dedup_key(*args)
        assert len(compute_dedup_key(*args)) == 64

    def test_distinguishes_every_component(self):
        base = dict(
            kind="budget_warning", budget_id="bdg_1", category_id=None,
            period_start=datetime(2026, 10, 1), period_end=datetime(2026, 11, 1), tier=80,
        )
        variants = [
            dict(base, kind="budget_exceeded"),
            dict(base, budget_id="bdg_2"),
            dict(base, category_id="cat_1"),
            dict(base, period_start=datetime(2026, 9, 1)),
            dict(base, period_end=datetime(2026, 10, 31)),
            dict(base, tier=90),
        ]
        keys = {compute_dedup_key(**v) for v in variants}
        keys.add(compute_dedup_key(**base))
        assert len(keys) == len(variants) + 1


class TestTryAcquire:
    """Tests for SuppressionLedger.try_acquire()."""

    def test_first_acquire_wins(self, ledger):
        assert ledger.try_acquire(KEY, timedelta(hours=12)) is True

    def test_second_acquire_within_ttl_loses(self, ledger, clock):
        assert ledger.try_acquire(KEY, timedelta(hours=12)) is True
        clock.advance(hours=11, minutes=59)
        assert ledger.try_acquire(KEY, timedelta(hours=12)) is False

    def test_reacquire_after_expiry(self, ledger, clock, test_db_session):
        """An expired record is taken over, not duplicated."""
        assert ledger.try_acquire(KEY, timedelta(hours=12)) is True
        clock.advance(hours=12)
        assert ledger.try_acquire(KEY, timedelta(hours=12)) is True

        records = test_db_session.query(SuppressionRecord).all()
        assert len(records) == 1
        assert records[0].expires_at == clock.now + timedelta(hours=12)

    def test_different_keys_are_independent(self, ledger):
        other = KEY[::-1]
        assert ledger.try_acquire(KEY, timedelta(hours=1)) is True
        assert ledger.try_acquire(other, timedelta(hours=1)) is True

    def test_concurrent_acquire_single_winner(self, file_session_factory):
        """Many threads racing for the same key: exactly one wins."""
        ledger = SuppressionLedger(file_session_factory)
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            acquired = ledger.try_acquire(KEY, timedelta(hours=12))
            with lock:
                results.append(acquired)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7

    def test_concurrent_reacquire_of_expired_key(self, file_session_factory):
        """Racing takeovers of an expired record: exactly one wins."""
        now = {"value": datetime(2026, 10, 15, 12, 0)}
        ledger = SuppressionLedger(file_session_factory, clock=lambda: now["value"])
        assert ledger.try_acquire(KEY, timedelta(hours=1)) is True
        now["value"] = datetime(2026, 10, 15, 14, 0)

        barrier = threading.Barrier(6)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            acquired = ledger.try_acquire(KEY, timedelta(hours=1))
            with lock:
                results.append(acquired)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestPeekAndPurge:
    """Tests for diagnostics and garbage collection."""

    def test_peek_missing(self, ledger):
        assert ledger.peek(KEY) is None

    def test_peek_live_then_expired(self, ledger, clock):
        ledger.try_acquire(KEY, timedelta(hours=1))
        record = ledger.peek(KEY)
        assert record["live"] is True
        assert record["delivered_at"] == clock.now

        clock.advance(hours=2)
        assert ledger.peek(KEY)["live"] is False

    def test_purge_expired(self, ledger, clock, test_db_session):
        ledger.try_acquire(KEY, timedelta(hours=1))
        ledger.try_acquire(KEY[::-1], timedelta(hours=48))
        clock.advance(hours=2)

        assert ledger.purge_expired() == 1
        assert test_db_session.query(SuppressionRecord).count() == 1


class TestTransientErrors:
    """Tests for retry and TransientInfraError."""

    def test_retries_then_raises(self, ledger):
        error = OperationalError("INSERT", {}, Exception("database is unreachable"))
        with patch.object(SuppressionLedger, "INITIAL_BACKOFF", 0), \
             patch.object(ledger, "_try_acquire_once", side_effect=error) as attempt:
            with pytest.raises(TransientInfraError) as exc_info:
                ledger.try_acquire(KEY, timedelta(hours=1))

        assert attempt.call_count == SuppressionLedger.MAX_RETRIES
        assert exc_info.value.operation == "try_acquire"

    def test_recovers_after_transient_error(self, ledger):
        error = OperationalError("INSERT", {}, Exception("connection reset"))
        with patch.object(SuppressionLedger, "INITIAL_BACKOFF", 0), \
             patch.object(ledger, "_try_acquire_once", side_effect=[error, True]):
            assert ledger.try_acquire(KEY, timedelta(hours=1)) is True
