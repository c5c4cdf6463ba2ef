"""Start, stop and force-stop of instrument usage sessions.

Each operation spans the capacity ledger (``InstrumentCheckouts``) and the
usage ledger (``UsageSessions``). Both live in the same database, so one
``instrument_transaction`` covers them: either the checkout and its session
record change together or neither changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.booking_models import Instrument, UsageSession
from services.audit_service import log_audit
from services.capacity_ledger import (
    ReleasedCheckout,
    instrument_transaction,
    release,
    release_on_behalf,
    try_reserve,
)


LOGGER = logging.getLogger("lab_booking.sessions")


@dataclass
class SessionOutcome:
    instrument: Instrument
    usage: UsageSession
    duration_minutes: int = 0


def _find_active_usage(db: Session, instrument_id: int, user_id: int) -> UsageSession | None:
    return db.execute(
        select(UsageSession)
        .where(UsageSession.UserID == user_id)
        .where(UsageSession.InstrumentID == instrument_id)
        .where(UsageSession.Status == "active")
        .order_by(UsageSession.StartedAt.desc(), UsageSession.SessionID.desc())
    ).scalars().first()


def _close_usage(
    db: Session,
    instrument_id: int,
    released: ReleasedCheckout,
    status: str,
    notes: str | None = None,
) -> UsageSession:
    usage = _find_active_usage(db, instrument_id, released.user_id)
    if usage is None:
        # Checkout without a history row; write it so the ledgers agree again.
        LOGGER.warning(
            "Missing active usage record instrument_id=%s user_id=%s, recreating from checkout",
            instrument_id,
            released.user_id,
        )
        usage = UsageSession(
            UserID=released.user_id,
            InstrumentID=instrument_id,
            StartedAt=released.started_at,
            Quantity=released.quantity,
            CreatedDate=released.ended_at,
        )
        db.add(usage)

    usage.EndedAt = released.ended_at
    usage.DurationMinutes = released.duration_minutes
    usage.Status = status
    usage.UpdatedDate = released.ended_at
    if status == "completed":
        usage.Notes = notes
    else:
        usage.TerminatedBy = released.terminated_by
        usage.TerminationReason = released.termination_reason
    db.flush()
    return usage


def start_session(
    db: Session,
    instrument_id: int,
    user_id: int,
    quantity: int = 1,
    now: datetime | None = None,
) -> SessionOutcome:
    def action() -> SessionOutcome:
        reservation = try_reserve(db, instrument_id, user_id, quantity, now=now)
        started_at = reservation.checkout.StartedAt
        usage = UsageSession(
            UserID=user_id,
            InstrumentID=instrument_id,
            StartedAt=started_at,
            Quantity=reservation.checkout.Quantity,
            Status="active",
            DurationMinutes=0,
            CreatedDate=started_at,
            UpdatedDate=started_at,
        )
        db.add(usage)
        db.flush()
        log_audit(
            db,
            "UsageSession",
            usage.SessionID,
            "SessionStarted",
            f"instrument={instrument_id} quantity={usage.Quantity}",
            user_id=user_id,
        )
        return SessionOutcome(instrument=reservation.instrument, usage=usage)

    outcome = instrument_transaction(db, instrument_id, action, "start")
    LOGGER.info(
        "Session started instrument_id=%s user_id=%s quantity=%s session_id=%s",
        instrument_id,
        user_id,
        outcome.usage.Quantity,
        outcome.usage.SessionID,
    )
    return outcome


def stop_session(
    db: Session,
    instrument_id: int,
    user_id: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> SessionOutcome:
    def action() -> SessionOutcome:
        released = release(db, instrument_id, user_id, now=now)
        usage = _close_usage(db, instrument_id, released, "completed", notes=notes)
        log_audit(
            db,
            "UsageSession",
            usage.SessionID,
            "SessionCompleted",
            f"instrument={instrument_id} duration={released.duration_minutes}",
            user_id=user_id,
        )
        return SessionOutcome(
            instrument=released.instrument,
            usage=usage,
            duration_minutes=released.duration_minutes,
        )

    outcome = instrument_transaction(db, instrument_id, action, "stop")
    LOGGER.info(
        "Session completed instrument_id=%s user_id=%s session_id=%s duration=%s",
        instrument_id,
        user_id,
        outcome.usage.SessionID,
        outcome.duration_minutes,
    )
    return outcome


def force_stop_session(
    db: Session,
    instrument_id: int,
    target_user_id: int,
    admin_id: int,
    admin_role: str | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> SessionOutcome:
    def action() -> SessionOutcome:
        released = release_on_behalf(
            db,
            instrument_id,
            target_user_id,
            acting_admin_id=admin_id,
            acting_role=admin_role,
            reason=reason,
            now=now,
        )
        usage = _close_usage(db, instrument_id, released, "terminated")
        log_audit(
            db,
            "UsageSession",
            usage.SessionID,
            "SessionTerminated",
            f"instrument={instrument_id} user={target_user_id} reason={reason or ''}",
            user_id=admin_id,
        )
        return SessionOutcome(
            instrument=released.instrument,
            usage=usage,
            duration_minutes=released.duration_minutes,
        )

    outcome = instrument_transaction(db, instrument_id, action, "force-stop")
    LOGGER.warning(
        "Session terminated instrument_id=%s user_id=%s admin_id=%s session_id=%s",
        instrument_id,
        target_user_id,
        admin_id,
        outcome.usage.SessionID,
    )
    return outcome
