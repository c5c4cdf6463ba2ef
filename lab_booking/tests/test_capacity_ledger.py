import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace

from booking_test_support import TempDatabase

from services.capacity_ledger import (
    available_quantity,
    duration_minutes,
    is_fully_occupied,
    load_instrument,
    occupied_quantity,
    release,
    release_on_behalf,
    remove,
    set_capacity,
    try_reserve,
)
from services.errors import (
    CapacityExceededError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)


class DerivationTests(unittest.TestCase):
    def test_occupancy_is_sum_of_checkout_quantities(self):
        checkouts = [SimpleNamespace(Quantity=2), SimpleNamespace(Quantity=1)]
        self.assertEqual(occupied_quantity(checkouts), 3)
        self.assertEqual(available_quantity(5, checkouts), 2)
        self.assertFalse(is_fully_occupied(5, checkouts))
        self.assertTrue(is_fully_occupied(3, checkouts))

    def test_available_never_negative_after_shrink(self):
        checkouts = [SimpleNamespace(Quantity=3)]
        self.assertEqual(available_quantity(1, checkouts), 0)
        self.assertTrue(is_fully_occupied(1, checkouts))

    def test_zero_capacity_is_fully_occupied(self):
        self.assertEqual(available_quantity(0, []), 0)
        self.assertTrue(is_fully_occupied(0, []))

    def test_duration_rounds_half_minutes_up(self):
        start = datetime(2026, 3, 1, 9, 0, 0)
        self.assertEqual(duration_minutes(start, start + timedelta(seconds=90)), 2)
        self.assertEqual(duration_minutes(start, start + timedelta(seconds=89)), 1)
        self.assertEqual(duration_minutes(start, start + timedelta(seconds=30)), 1)
        self.assertEqual(duration_minutes(start, start + timedelta(seconds=29)), 0)
        self.assertEqual(duration_minutes(start, start - timedelta(minutes=5)), 0)


class CapacityLedgerTests(unittest.TestCase):
    def setUp(self):
        self.database = TempDatabase()
        self.db = self.database.Session()

    def tearDown(self):
        self.db.close()
        self.database.close()

    def test_reserve_reduces_availability(self):
        instrument_id = self.database.add_instrument(quantity=3)
        reservation = try_reserve(self.db, instrument_id, 1, 2)
        self.db.commit()

        self.assertEqual(reservation.checkout.Quantity, 2)
        instrument = load_instrument(self.db, instrument_id)
        self.assertEqual(occupied_quantity(instrument.Checkouts), 2)
        self.assertEqual(available_quantity(instrument.Quantity, instrument.Checkouts), 1)
        self.assertEqual(instrument.AvailableQuantity, 1)

    def test_reserve_beyond_remaining_reports_available(self):
        instrument_id = self.database.add_instrument(quantity=3)
        try_reserve(self.db, instrument_id, 1, 2)
        self.db.commit()

        with self.assertRaises(CapacityExceededError) as ctx:
            try_reserve(self.db, instrument_id, 2, 2)
        self.assertEqual(ctx.exception.available, 1)
        self.assertEqual(str(ctx.exception), "Not enough quantity available. Available: 1")

    def test_reserve_rejects_duplicate_checkout(self):
        instrument_id = self.database.add_instrument(quantity=5)
        try_reserve(self.db, instrument_id, 1, 1)
        self.db.commit()

        with self.assertRaises(InvalidStateError) as ctx:
            try_reserve(self.db, instrument_id, 1, 1)
        self.assertEqual(ctx.exception.reason, "duplicate-checkout")
        self.assertEqual(str(ctx.exception), "You are already using this instrument")

    def test_reserve_rejects_instrument_not_available(self):
        instrument_id = self.database.add_instrument(quantity=2, status="maintenance")
        with self.assertRaises(InvalidStateError) as ctx:
            try_reserve(self.db, instrument_id, 1, 1)
        self.assertEqual(ctx.exception.reason, "not-available")
        self.assertEqual(str(ctx.exception), "Instrument is not available")

    def test_reserve_unknown_instrument(self):
        with self.assertRaises(NotFoundError):
            try_reserve(self.db, 999, 1, 1)

    def test_reserve_rejects_bad_quantity(self):
        instrument_id = self.database.add_instrument(quantity=2)
        for bad in (0, -1, True, "1"):
            with self.assertRaises(ValidationError):
                try_reserve(self.db, instrument_id, 1, bad)

    def test_zero_capacity_instrument_rejects_everyone(self):
        instrument_id = self.database.add_instrument(quantity=0)
        with self.assertRaises(CapacityExceededError) as ctx:
            try_reserve(self.db, instrument_id, 1, 1)
        self.assertEqual(ctx.exception.available, 0)

    def test_release_without_checkout(self):
        instrument_id = self.database.add_instrument(quantity=2)
        with self.assertRaises(InvalidStateError) as ctx:
            release(self.db, instrument_id, 1)
        self.assertEqual(ctx.exception.reason, "no-active-checkout")
        self.assertEqual(str(ctx.exception), "You are not currently using this instrument")

    def test_release_restores_capacity_and_counts_usage(self):
        instrument_id = self.database.add_instrument(quantity=1)
        started = datetime(2026, 3, 1, 9, 0, 0)
        try_reserve(self.db, instrument_id, 1, 1, now=started)
        self.db.commit()

        released = release(self.db, instrument_id, 1, now=started + timedelta(minutes=45))
        self.db.commit()

        self.assertEqual(released.duration_minutes, 45)
        self.assertEqual(released.quantity, 1)
        instrument = load_instrument(self.db, instrument_id)
        self.assertEqual(instrument.Checkouts, [])
        self.assertEqual(instrument.TotalUsageMinutes, 45)
        self.assertEqual(instrument.UsageCount, 1)
        self.assertEqual(available_quantity(instrument.Quantity, instrument.Checkouts), 1)

    def test_release_on_behalf_requires_admin(self):
        instrument_id = self.database.add_instrument(quantity=1)
        try_reserve(self.db, instrument_id, 1, 1)
        self.db.commit()

        with self.assertRaises(UnauthorizedError):
            release_on_behalf(self.db, instrument_id, 1, acting_admin_id=2, acting_role="user")

        released = release_on_behalf(
            self.db, instrument_id, 1, acting_admin_id=2, acting_role="admin", reason="Overdue"
        )
        self.db.commit()
        self.assertEqual(released.terminated_by, 2)
        self.assertEqual(released.termination_reason, "Overdue")

    def test_release_on_behalf_target_not_using(self):
        instrument_id = self.database.add_instrument(quantity=1)
        with self.assertRaises(InvalidStateError) as ctx:
            release_on_behalf(self.db, instrument_id, 5, acting_admin_id=2, acting_role="admin")
        self.assertEqual(str(ctx.exception), "User is not currently using this instrument")

    def test_shrinking_capacity_keeps_existing_checkouts(self):
        instrument_id = self.database.add_instrument(quantity=3)
        try_reserve(self.db, instrument_id, 1, 2)
        try_reserve(self.db, instrument_id, 2, 1)
        self.db.commit()

        instrument = set_capacity(self.db, instrument_id, 1, "admin")
        self.db.commit()
        self.assertEqual(len(instrument.Checkouts), 2)
        self.assertEqual(occupied_quantity(instrument.Checkouts), 3)
        self.assertEqual(available_quantity(instrument.Quantity, instrument.Checkouts), 0)

        with self.assertRaises(CapacityExceededError):
            try_reserve(self.db, instrument_id, 3, 1)

        release(self.db, instrument_id, 1)
        self.db.commit()
        instrument = load_instrument(self.db, instrument_id)
        self.assertEqual(available_quantity(instrument.Quantity, instrument.Checkouts), 0)

        release(self.db, instrument_id, 2)
        self.db.commit()
        instrument = load_instrument(self.db, instrument_id)
        self.assertEqual(available_quantity(instrument.Quantity, instrument.Checkouts), 1)

    def test_set_capacity_validation_and_role(self):
        instrument_id = self.database.add_instrument(quantity=2)
        with self.assertRaises(ValidationError):
            set_capacity(self.db, instrument_id, -1, "admin")
        with self.assertRaises(UnauthorizedError):
            set_capacity(self.db, instrument_id, 4, "user")

    def test_remove_refused_while_in_use(self):
        instrument_id = self.database.add_instrument(quantity=2)
        try_reserve(self.db, instrument_id, 1, 1)
        self.db.commit()

        with self.assertRaises(InvalidStateError) as ctx:
            remove(self.db, instrument_id, "admin")
        self.assertEqual(ctx.exception.reason, "in-use")
        self.db.rollback()

        release(self.db, instrument_id, 1)
        self.db.commit()
        remove(self.db, instrument_id, "admin")
        self.db.commit()
        with self.assertRaises(NotFoundError):
            load_instrument(self.db, instrument_id)


if __name__ == "__main__":
    unittest.main()
