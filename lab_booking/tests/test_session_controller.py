import gc
import threading
import unittest
from datetime import datetime, timedelta
from unittest import mock

from booking_test_support import TempDatabase

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from models.booking_models import AuditLog, InstrumentCheckout, UsageSession
from services import capacity_ledger
from services.capacity_ledger import available_quantity, load_instrument, occupied_quantity
from services.errors import (
    CapacityExceededError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
)
from services.session_controller import force_stop_session, start_session, stop_session


START = datetime(2026, 3, 2, 8, 0, 0)


class SessionControllerTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()

    def tearDown(self):
        self.db.close()
        self.database.close()

    def _count(self, model, *conditions):
        stmt = select(func.count()).select_from(model)
        for condition in conditions:
            stmt = stmt.where(condition)
        return self.db.execute(stmt).scalar()

    def test_start_then_stop_records_duration(self):
        instrument_id = self.database.add_instrument(quantity=1)

        started = start_session(self.db, instrument_id, 7, now=START)
        self.assertEqual(started.usage.Status, "active")
        self.assertEqual(started.usage.StartedAt, START)
        self.assertEqual(available_quantity(started.instrument.Quantity, started.instrument.Checkouts), 0)

        stopped = stop_session(self.db, instrument_id, 7, notes="done", now=START + timedelta(seconds=90))
        self.assertEqual(stopped.duration_minutes, 2)
        self.assertEqual(stopped.usage.SessionID, started.usage.SessionID)
        self.assertEqual(stopped.usage.Status, "completed")
        self.assertEqual(stopped.usage.DurationMinutes, 2)
        self.assertEqual(stopped.usage.Notes, "done")
        self.assertEqual(stopped.instrument.TotalUsageMinutes, 2)
        self.assertEqual(stopped.instrument.UsageCount, 1)
        self.assertEqual(self._count(InstrumentCheckout), 0)

    def test_start_twice_is_rejected(self):
        instrument_id = self.database.add_instrument(quantity=3)
        start_session(self.db, instrument_id, 7)
        with self.assertRaises(InvalidStateError) as ctx:
            start_session(self.db, instrument_id, 7)
        self.assertEqual(ctx.exception.reason, "duplicate-checkout")
        self.assertEqual(self._count(UsageSession), 1)

    def test_stop_without_start_changes_nothing(self):
        instrument_id = self.database.add_instrument(quantity=1)
        with self.assertRaises(InvalidStateError):
            stop_session(self.db, instrument_id, 7)
        self.assertEqual(self._count(UsageSession), 0)
        self.assertEqual(load_instrument(self.db, instrument_id).UsageCount, 0)

    def test_capacity_two_shared_by_two_users(self):
        instrument_id = self.database.add_instrument(quantity=2)
        start_session(self.db, instrument_id, 1, quantity=1)
        start_session(self.db, instrument_id, 2, quantity=1)

        with self.assertRaises(CapacityExceededError) as ctx:
            start_session(self.db, instrument_id, 3, quantity=1)
        self.assertEqual(ctx.exception.available, 0)

        stop_session(self.db, instrument_id, 1)
        outcome = start_session(self.db, instrument_id, 3, quantity=1)
        self.assertEqual(
            sorted(checkout.UserID for checkout in outcome.instrument.Checkouts),
            [2, 3],
        )

    def test_force_stop_attributes_admin(self):
        instrument_id = self.database.add_instrument(quantity=1)
        start_session(self.db, instrument_id, 7, now=START)

        outcome = force_stop_session(
            self.db,
            instrument_id,
            7,
            admin_id=1,
            admin_role="admin",
            reason="Scheduled maintenance",
            now=START + timedelta(minutes=20),
        )
        self.assertEqual(outcome.usage.Status, "terminated")
        self.assertEqual(outcome.usage.TerminatedBy, 1)
        self.assertEqual(outcome.usage.TerminationReason, "Scheduled maintenance")
        self.assertEqual(outcome.duration_minutes, 20)
        self.assertEqual(self._count(InstrumentCheckout), 0)
        self.assertEqual(self._count(AuditLog, AuditLog.Action == "SessionTerminated", AuditLog.UserID == 1), 1)

    def test_force_stop_by_non_admin_is_unauthorized(self):
        instrument_id = self.database.add_instrument(quantity=1)
        start_session(self.db, instrument_id, 7)
        with self.assertRaises(UnauthorizedError):
            force_stop_session(self.db, instrument_id, 7, admin_id=8, admin_role="user")
        self.assertEqual(self._count(InstrumentCheckout), 1)
        self.assertEqual(self._count(UsageSession, UsageSession.Status == "active"), 1)

    def test_stop_recreates_missing_usage_record(self):
        instrument_id = self.database.add_instrument(quantity=1)
        start_session(self.db, instrument_id, 7, now=START)
        self.db.query(UsageSession).delete()
        self.db.commit()

        with self.assertLogs("lab_booking.sessions", level="WARNING"):
            outcome = stop_session(self.db, instrument_id, 7, now=START + timedelta(minutes=10))
        self.assertEqual(outcome.usage.Status, "completed")
        self.assertEqual(outcome.usage.StartedAt, START)
        self.assertEqual(outcome.usage.DurationMinutes, 10)

    def test_commit_conflicts_are_retried_then_reported(self):
        instrument_id = self.database.add_instrument(quantity=1)
        with mock.patch.object(self.db, "commit", side_effect=StaleDataError("stale")) as commit:
            with self.assertRaises(ConflictError):
                start_session(self.db, instrument_id, 7)
        self.assertEqual(commit.call_count, capacity_ledger.CONFLICT_RETRIES)
        self.assertEqual(self._count(InstrumentCheckout), 0)
        self.assertEqual(self._count(UsageSession), 0)

    def test_sole_holder_blocks_then_frees_capacity(self):
        instrument_id = self.database.add_instrument(quantity=2)
        start_session(self.db, instrument_id, 1, quantity=2)

        with self.assertRaises(CapacityExceededError) as ctx:
            start_session(self.db, instrument_id, 2, quantity=1)
        self.assertEqual(ctx.exception.available, 0)

        stopped = stop_session(self.db, instrument_id, 1)
        self.assertEqual(available_quantity(stopped.instrument.Quantity, stopped.instrument.Checkouts), 2)

        outcome = start_session(self.db, instrument_id, 2, quantity=1)
        self.assertEqual([checkout.UserID for checkout in outcome.instrument.Checkouts], [2])
        self.assertEqual(available_quantity(outcome.instrument.Quantity, outcome.instrument.Checkouts), 1)

    def test_integrity_errors_outside_checkout_key_are_not_retried(self):
        instrument_id = self.database.add_instrument(quantity=1)
        error = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: UsageSessions.UserID"))
        with mock.patch.object(self.db, "commit", side_effect=error) as commit:
            with self.assertRaises(IntegrityError):
                start_session(self.db, instrument_id, 7)
        self.assertEqual(commit.call_count, 1)
        self.assertEqual(self._count(InstrumentCheckout), 0)

    def test_checkout_key_races_are_retried(self):
        instrument_id = self.database.add_instrument(quantity=1)
        error = IntegrityError(
            "INSERT",
            {},
            Exception("UNIQUE constraint failed: InstrumentCheckouts.InstrumentID, InstrumentCheckouts.UserID"),
        )
        with mock.patch.object(self.db, "commit", side_effect=error) as commit:
            with self.assertRaises(ConflictError):
                start_session(self.db, instrument_id, 7)
        self.assertEqual(commit.call_count, capacity_ledger.CONFLICT_RETRIES)

    def test_unknown_instruments_leave_no_locks_behind(self):
        gc.collect()
        before = len(capacity_ledger._INSTRUMENT_LOCKS)
        for instrument_id in range(10_000, 10_200):
            try:
                start_session(self.db, instrument_id, 7)
            except NotFoundError:
                pass
        gc.collect()
        self.assertEqual(len(capacity_ledger._INSTRUMENT_LOCKS), before)

    def _race_starts(self, capacity, workers):
        instrument_id = self.database.add_instrument(quantity=capacity)
        barrier = threading.Barrier(workers)
        results = []
        results_lock = threading.Lock()

        def attempt(user_id):
            db = self.database.Session()
            try:
                barrier.wait()
                try:
                    start_session(db, instrument_id, user_id)
                    outcome = "started"
                except CapacityExceededError:
                    outcome = "full"
                with results_lock:
                    results.append(outcome)
            finally:
                db.close()

        threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in range(1, workers + 1)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return instrument_id, results

    def test_concurrent_starts_never_exceed_capacity(self):
        instrument_id, results = self._race_starts(capacity=3, workers=8)

        self.assertEqual(results.count("started"), 3)
        self.assertEqual(results.count("full"), 5)
        instrument = load_instrument(self.db, instrument_id)
        self.assertEqual(len(instrument.Checkouts), 3)
        self.assertEqual(self._count(UsageSession, UsageSession.Status == "active"), 3)

    def test_concurrent_starts_below_capacity_all_succeed(self):
        instrument_id, results = self._race_starts(capacity=3, workers=2)

        self.assertEqual(results, ["started", "started"])
        instrument = load_instrument(self.db, instrument_id)
        self.assertEqual(occupied_quantity(instrument.Checkouts), 2)
        self.assertEqual(available_quantity(instrument.Quantity, instrument.Checkouts), 1)


if __name__ == "__main__":
    unittest.main()
