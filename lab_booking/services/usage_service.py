from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.booking_models import (
    SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    Instrument,
    LabUser,
    UsageSession,
)
from services.capacity_ledger import load_instrument, round_minutes
from services.errors import ValidationError
from services.instrument_service import serialize_checkout
from services.pagination import build_pagination, normalize_paging
from services.user_access_service import load_user_directory


RECENT_USAGE_LIMIT = 10
TOP_INSTRUMENTS_LIMIT = 5


def _stats_payload(count: int | None, total: int | None) -> dict[str, int]:
    sessions = int(count or 0)
    total_time = int(total or 0)
    return {
        "totalSessions": sessions,
        "totalTime": total_time,
        "averageTime": round_minutes(total_time / sessions) if sessions else 0,
    }


def _instrument_directory(db: Session, instrument_ids: set[int]) -> dict[int, dict[str, Any]]:
    if not instrument_ids:
        return {}
    rows = db.execute(select(Instrument).where(Instrument.InstrumentID.in_(instrument_ids))).scalars().all()
    return {
        row.InstrumentID: {
            "instrumentID": row.InstrumentID,
            "name": row.Name,
            "category": row.Category,
            "location": row.Location,
            "imagePath": row.ImagePath,
        }
        for row in rows
    }


def serialize_usage(
    usage: UsageSession,
    instruments: dict[int, dict[str, Any]] | None = None,
    users: dict[int, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    user_directory = users or {}
    return {
        "sessionID": usage.SessionID,
        "userID": usage.UserID,
        "user": user_directory.get(int(usage.UserID)),
        "instrumentID": usage.InstrumentID,
        "instrument": (instruments or {}).get(int(usage.InstrumentID)),
        "startedAt": usage.StartedAt,
        "endedAt": usage.EndedAt,
        "durationMinutes": int(usage.DurationMinutes or 0),
        "quantity": usage.Quantity,
        "status": usage.Status,
        "notes": usage.Notes,
        "terminatedBy": user_directory.get(int(usage.TerminatedBy)) if usage.TerminatedBy else None,
        "terminatedByID": usage.TerminatedBy,
        "terminationReason": usage.TerminationReason,
        "createdDate": usage.CreatedDate,
        "updatedDate": usage.UpdatedDate,
    }


def serialize_usage_rows(db: Session, rows: list[UsageSession]) -> list[dict[str, Any]]:
    instruments = _instrument_directory(db, {int(row.InstrumentID) for row in rows})
    users = load_user_directory(db, [row.UserID for row in rows] + [row.TerminatedBy for row in rows])
    return [serialize_usage(row, instruments, users) for row in rows]


def usage_statistics(
    db: Session,
    *,
    user_id: int | None = None,
    instrument_id: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> dict[str, int]:
    """Totals over finished sessions only; active sessions never count."""
    stmt = select(
        func.count(UsageSession.SessionID),
        func.coalesce(func.sum(UsageSession.DurationMinutes), 0),
    ).where(UsageSession.Status.in_(TERMINAL_SESSION_STATUSES))
    if user_id is not None:
        stmt = stmt.where(UsageSession.UserID == user_id)
    if instrument_id is not None:
        stmt = stmt.where(UsageSession.InstrumentID == instrument_id)
    if since is not None:
        stmt = stmt.where(UsageSession.StartedAt >= since)
    if until is not None:
        stmt = stmt.where(UsageSession.StartedAt < until)
    count, total = db.execute(stmt).one()
    return _stats_payload(count, total)


def instrument_statistics(db: Session, instrument_id: int) -> dict[str, Any]:
    instrument = load_instrument(db, instrument_id)
    totals = usage_statistics(db, instrument_id=instrument_id)
    recent = db.execute(
        select(UsageSession)
        .where(UsageSession.InstrumentID == instrument_id)
        .order_by(UsageSession.StartedAt.desc(), UsageSession.SessionID.desc())
        .limit(RECENT_USAGE_LIMIT)
    ).scalars().all()
    directory = load_user_directory(db, [checkout.UserID for checkout in instrument.Checkouts])
    return {
        "instrumentID": instrument.InstrumentID,
        "totalUsageTime": totals["totalTime"],
        "averageUsageTime": totals["averageTime"],
        "totalSessions": totals["totalSessions"],
        "currentUsers": [serialize_checkout(checkout, directory) for checkout in instrument.Checkouts],
        "recentUsage": serialize_usage_rows(db, list(recent)),
    }


def list_active_sessions(db: Session, user_id: int | None = None) -> list[dict[str, Any]]:
    stmt = select(UsageSession).where(UsageSession.Status == "active")
    if user_id is not None:
        stmt = stmt.where(UsageSession.UserID == user_id)
    rows = db.execute(
        stmt.order_by(UsageSession.StartedAt.desc(), UsageSession.SessionID.desc())
    ).scalars().all()
    return serialize_usage_rows(db, list(rows))


def list_usage_history(
    db: Session,
    *,
    user_id: int | None = None,
    instrument_id: int | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict[str, Any]:
    page, limit = normalize_paging(page, limit)
    filters = []
    if user_id is not None:
        filters.append(UsageSession.UserID == user_id)
    if instrument_id is not None:
        filters.append(UsageSession.InstrumentID == instrument_id)
    if status:
        if status not in SESSION_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(SESSION_STATUSES)}", field="status")
        filters.append(UsageSession.Status == status)

    stmt = select(UsageSession)
    count_stmt = select(func.count(UsageSession.SessionID))
    for condition in filters:
        stmt = stmt.where(condition)
        count_stmt = count_stmt.where(condition)

    total = db.execute(count_stmt).scalar() or 0
    rows = db.execute(
        stmt.order_by(UsageSession.StartedAt.desc(), UsageSession.SessionID.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        "usageHistory": serialize_usage_rows(db, list(rows)),
        "pagination": build_pagination(page, limit, total),
    }


def top_instruments(db: Session, since: datetime | None = None, limit: int = TOP_INSTRUMENTS_LIMIT) -> list[dict[str, Any]]:
    total_usage = func.sum(UsageSession.DurationMinutes).label("totalUsage")
    session_count = func.count(UsageSession.SessionID).label("sessionCount")
    stmt = (
        select(Instrument.InstrumentID, Instrument.Name, Instrument.Category, total_usage, session_count)
        .select_from(UsageSession)
        .join(Instrument, Instrument.InstrumentID == UsageSession.InstrumentID)
        .where(UsageSession.Status.in_(TERMINAL_SESSION_STATUSES))
    )
    if since is not None:
        stmt = stmt.where(UsageSession.StartedAt >= since)
    stmt = (
        stmt
        .group_by(Instrument.InstrumentID, Instrument.Name, Instrument.Category)
        .order_by(total_usage.desc(), session_count.desc(), Instrument.InstrumentID)
        .limit(max(1, limit))
    )
    return [
        {
            "instrumentID": instrument_id,
            "name": name,
            "category": category,
            "totalUsage": int(total or 0),
            "sessionCount": int(count or 0),
        }
        for instrument_id, name, category, total, count in db.execute(stmt).all()
    ]


def dashboard_statistics(db: Session, window_days: int = 30, now: datetime | None = None) -> dict[str, Any]:
    cutoff = (now or datetime.now()) - timedelta(days=max(1, window_days))
    total_users = db.execute(select(func.count(LabUser.UserID))).scalar() or 0
    active_users = db.execute(select(func.count(LabUser.UserID)).where(LabUser.IsActive.is_(True))).scalar() or 0
    admin_users = db.execute(select(func.count(LabUser.UserID)).where(LabUser.Role == "admin")).scalar() or 0
    active_sessions = db.execute(
        select(func.count(UsageSession.SessionID)).where(UsageSession.Status == "active")
    ).scalar() or 0
    recent = usage_statistics(db, since=cutoff)
    return {
        "users": {
            "total": int(total_users or 0),
            "active": int(active_users or 0),
            "admins": int(admin_users or 0),
        },
        "usage": {
            "activeSessions": int(active_sessions),
            "recentSessions": recent["totalSessions"],
            "recentTotalTime": recent["totalTime"],
            "windowDays": max(1, window_days),
        },
        "topInstruments": top_instruments(db, since=cutoff),
    }
