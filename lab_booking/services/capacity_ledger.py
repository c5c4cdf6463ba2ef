from __future__ import annotations

import logging
import math
import os
import threading
import weakref
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from models.booking_models import Instrument, InstrumentCheckout
from services.errors import (
    CapacityExceededError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    require_admin,
)


LOGGER = logging.getLogger("lab_booking.sessions")
CONFLICT_RETRIES = max(1, int(os.environ.get("LAB_BOOKING_CONFLICT_RETRIES") or "3"))

_LOCKS_GUARD = threading.Lock()
# Entries vanish once no thread holds the lock.
_INSTRUMENT_LOCKS: weakref.WeakValueDictionary[int, threading.Lock] = weakref.WeakValueDictionary()
CHECKOUT_UNIQUE_KEY = "uq_instrument_checkout_user"

T = TypeVar("T")


@dataclass
class Reservation:
    instrument: Instrument
    checkout: InstrumentCheckout


@dataclass
class ReleasedCheckout:
    instrument: Instrument
    user_id: int
    quantity: int
    started_at: datetime
    ended_at: datetime
    duration_minutes: int
    terminated_by: int | None = None
    termination_reason: str | None = None


def occupied_quantity(checkouts: Iterable[Any]) -> int:
    return sum(int(item.Quantity or 0) for item in checkouts)


def available_quantity(capacity: int | None, checkouts: Iterable[Any]) -> int:
    return max(0, int(capacity or 0) - occupied_quantity(checkouts))


def is_fully_occupied(capacity: int | None, checkouts: Iterable[Any]) -> bool:
    return occupied_quantity(checkouts) >= int(capacity or 0)


def round_minutes(value: float) -> int:
    # Halves round up, so 90 seconds is 2 minutes.
    return int(math.floor(value + 0.5))


def duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    seconds = (ended_at - started_at).total_seconds()
    if seconds <= 0:
        return 0
    return round_minutes(seconds / 60)


def _instrument_lock(instrument_id: int) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _INSTRUMENT_LOCKS.get(instrument_id)
        if lock is None:
            lock = threading.Lock()
            _INSTRUMENT_LOCKS[instrument_id] = lock
        return lock


def _is_checkout_race(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", None) or exc)
    if CHECKOUT_UNIQUE_KEY in message:
        return True
    # SQLite names the columns instead of the constraint.
    return "UNIQUE" in message.upper() and "InstrumentCheckouts.UserID" in message


@contextmanager
def _locked(instrument_id: int):
    lock = _instrument_lock(int(instrument_id))
    with lock:
        yield


def instrument_transaction(db: Session, instrument_id: int, action: Callable[[], T], operation: str) -> T:
    """Run ``action`` and commit, serialized per instrument.

    ``action`` may touch the ledger, the usage records and the audit log; all of it
    lands in one commit or none of it does. Lost-update races detected by the
    instrument version column (or the one-checkout-per-user constraint) are
    retried a bounded number of times before surfacing as ``ConflictError``.
    """
    with _locked(instrument_id):
        for attempt in range(1, CONFLICT_RETRIES + 1):
            try:
                outcome = action()
                db.commit()
                return outcome
            except (StaleDataError, IntegrityError) as exc:
                db.rollback()
                if isinstance(exc, IntegrityError) and not _is_checkout_race(exc):
                    raise
                LOGGER.warning(
                    "Ledger conflict op=%s instrument_id=%s attempt=%s error=%s",
                    operation,
                    instrument_id,
                    attempt,
                    exc.__class__.__name__,
                )
            except Exception:
                db.rollback()
                raise
    raise ConflictError(
        "Instrument was modified concurrently. Please retry.",
        instrumentID=instrument_id,
        attempts=CONFLICT_RETRIES,
    )


def load_instrument(db: Session, instrument_id: int, for_update: bool = False) -> Instrument:
    stmt = (
        select(Instrument)
        .options(selectinload(Instrument.Checkouts))
        .where(Instrument.InstrumentID == instrument_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    instrument = db.execute(stmt).scalars().first()
    if not instrument:
        raise NotFoundError("Instrument not found", instrumentID=instrument_id)
    return instrument


def find_checkout(instrument: Instrument, user_id: int) -> InstrumentCheckout | None:
    for checkout in instrument.Checkouts:
        if int(checkout.UserID) == int(user_id):
            return checkout
    return None


def _validate_quantity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Quantity must be an integer", field="quantity")
    if value < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity")
    return value


def _validate_capacity(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Capacity must be an integer", field="quantity")
    if value < 0:
        raise ValidationError("Capacity cannot be negative", field="quantity")
    return value


def _validate_user_id(value: Any, field: str = "userID") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{field} is required", field=field)
    return value


def _refresh_occupancy_hint(instrument: Instrument, now: datetime) -> None:
    # Also forces an UPDATE of the row, which bumps Version.
    instrument.AvailableQuantity = available_quantity(instrument.Quantity, instrument.Checkouts)
    instrument.UpdatedDate = now


def try_reserve(
    db: Session,
    instrument_id: int,
    user_id: int,
    quantity: int,
    now: datetime | None = None,
) -> Reservation:
    quantity = _validate_quantity(quantity)
    user_id = _validate_user_id(user_id)
    instrument = load_instrument(db, instrument_id, for_update=True)

    if instrument.Status != "available":
        raise InvalidStateError("Instrument is not available", reason="not-available", status=instrument.Status)
    if find_checkout(instrument, user_id):
        raise InvalidStateError("You are already using this instrument", reason="duplicate-checkout")

    remaining = available_quantity(instrument.Quantity, instrument.Checkouts)
    if quantity > remaining:
        raise CapacityExceededError(remaining)

    started_at = now or datetime.now()
    checkout = InstrumentCheckout(UserID=user_id, StartedAt=started_at, Quantity=quantity)
    instrument.Checkouts.append(checkout)
    _refresh_occupancy_hint(instrument, started_at)
    db.flush()
    return Reservation(instrument=instrument, checkout=checkout)


def _close_checkout(
    db: Session,
    instrument: Instrument,
    checkout: InstrumentCheckout,
    now: datetime | None,
) -> ReleasedCheckout:
    ended_at = now or datetime.now()
    started_at = checkout.StartedAt
    minutes = duration_minutes(started_at, ended_at)
    released = ReleasedCheckout(
        instrument=instrument,
        user_id=int(checkout.UserID),
        quantity=int(checkout.Quantity or 0),
        started_at=started_at,
        ended_at=ended_at,
        duration_minutes=minutes,
    )

    instrument.Checkouts.remove(checkout)
    instrument.TotalUsageMinutes = int(instrument.TotalUsageMinutes or 0) + minutes
    instrument.UsageCount = int(instrument.UsageCount or 0) + 1
    _refresh_occupancy_hint(instrument, ended_at)
    db.flush()
    return released


def release(db: Session, instrument_id: int, user_id: int, now: datetime | None = None) -> ReleasedCheckout:
    user_id = _validate_user_id(user_id)
    instrument = load_instrument(db, instrument_id, for_update=True)
    checkout = find_checkout(instrument, user_id)
    if not checkout:
        raise InvalidStateError("You are not currently using this instrument", reason="no-active-checkout")
    return _close_checkout(db, instrument, checkout, now)


def release_on_behalf(
    db: Session,
    instrument_id: int,
    target_user_id: int,
    acting_admin_id: int,
    acting_role: str | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> ReleasedCheckout:
    require_admin(acting_role)
    target_user_id = _validate_user_id(target_user_id)
    instrument = load_instrument(db, instrument_id, for_update=True)
    checkout = find_checkout(instrument, target_user_id)
    if not checkout:
        raise InvalidStateError("User is not currently using this instrument", reason="no-active-checkout")
    released = _close_checkout(db, instrument, checkout, now)
    released.terminated_by = int(acting_admin_id)
    released.termination_reason = reason
    return released


def set_capacity(
    db: Session,
    instrument_id: int,
    new_capacity: int,
    acting_role: str | None,
    now: datetime | None = None,
) -> Instrument:
    """Change total capacity without touching existing checkouts.

    Shrinking below current occupancy evicts nobody; ``try_reserve`` keeps
    rejecting until enough checkouts are released.
    """
    require_admin(acting_role)
    capacity = _validate_capacity(new_capacity)
    instrument = load_instrument(db, instrument_id, for_update=True)
    instrument.Quantity = capacity
    _refresh_occupancy_hint(instrument, now or datetime.now())
    db.flush()
    return instrument


def remove(db: Session, instrument_id: int, acting_role: str | None) -> None:
    require_admin(acting_role)
    instrument = load_instrument(db, instrument_id, for_update=True)
    if instrument.Checkouts:
        raise InvalidStateError(
            "Cannot delete instrument that is currently being used",
            reason="in-use",
            occupiedQuantity=occupied_quantity(instrument.Checkouts),
        )
    db.delete(instrument)
    db.flush()
