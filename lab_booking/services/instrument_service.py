from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from models.booking_models import INSTRUMENT_STATUSES, Instrument, InstrumentCheckout
from services.audit_service import log_audit
from services.capacity_ledger import (
    available_quantity,
    instrument_transaction,
    is_fully_occupied,
    load_instrument,
    occupied_quantity,
    remove,
    set_capacity,
)
from services.errors import ValidationError, require_admin
from services.pagination import build_pagination, normalize_paging
from services.user_access_service import load_user_directory


LOGGER = logging.getLogger("lab_booking.instruments")

_DETAIL_FIELDS = {
    "name": "Name",
    "description": "Description",
    "category": "Category",
    "location": "Location",
    "manualGuide": "ManualGuide",
    "imagePath": "ImagePath",
    "status": "Status",
    "specifications": "Specifications",
}


def normalize_specifications(raw: dict[str, Any] | None) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("specifications must be a mapping of names to values", field="specifications")
    return {str(key).strip(): str(value) for key, value in raw.items() if str(key).strip()}


def _require_text(value: str | None, field: str, label: str) -> str:
    text_value = (value or "").strip()
    if not text_value:
        raise ValidationError(f"{label} is required", field=field)
    return text_value


def _validate_status(value: str | None) -> str:
    status = (value or "available").strip().lower()
    if status not in INSTRUMENT_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(INSTRUMENT_STATUSES)}", field="status")
    return status


def serialize_checkout(checkout: InstrumentCheckout, user_directory: dict[int, dict[str, Any]] | None = None) -> dict:
    user = (user_directory or {}).get(int(checkout.UserID))
    return {
        "userID": checkout.UserID,
        "user": user,
        "startedAt": checkout.StartedAt,
        "quantity": checkout.Quantity,
    }


def serialize_instrument(instrument: Instrument, user_directory: dict[int, dict[str, Any]] | None = None) -> dict:
    checkouts = list(instrument.Checkouts or [])
    return {
        "instrumentID": instrument.InstrumentID,
        "name": instrument.Name,
        "description": instrument.Description,
        "category": instrument.Category,
        "location": instrument.Location,
        "manualGuide": instrument.ManualGuide,
        "imagePath": instrument.ImagePath,
        "status": instrument.Status,
        "specifications": dict(instrument.Specifications or {}),
        "quantity": instrument.Quantity,
        "occupiedQuantity": occupied_quantity(checkouts),
        "availableQuantity": available_quantity(instrument.Quantity, checkouts),
        "isFullyOccupied": is_fully_occupied(instrument.Quantity, checkouts),
        "currentUsers": [serialize_checkout(checkout, user_directory) for checkout in checkouts],
        "totalUsageTime": int(instrument.TotalUsageMinutes or 0),
        "usageCount": int(instrument.UsageCount or 0),
        "createdDate": instrument.CreatedDate,
        "updatedDate": instrument.UpdatedDate,
    }


def serialize_instrument_with_users(db: Session, instrument: Instrument) -> dict:
    directory = load_user_directory(db, [checkout.UserID for checkout in instrument.Checkouts])
    return serialize_instrument(instrument, directory)


def get_instrument_view(db: Session, instrument_id: int) -> dict:
    return serialize_instrument_with_users(db, load_instrument(db, instrument_id))


def list_instruments(
    db: Session,
    *,
    category: str | None = None,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict[str, Any]:
    page, limit = normalize_paging(page, limit)
    filters = []
    if category:
        filters.append(Instrument.Category == category)
    if status:
        filters.append(Instrument.Status == _validate_status(status))
    query = (search or "").strip()
    if query:
        pattern = f"%{query}%"
        filters.append(
            or_(
                Instrument.Name.ilike(pattern),
                Instrument.Description.ilike(pattern),
                Instrument.Category.ilike(pattern),
            )
        )

    stmt = select(Instrument).options(selectinload(Instrument.Checkouts))
    count_stmt = select(func.count(Instrument.InstrumentID))
    for condition in filters:
        stmt = stmt.where(condition)
        count_stmt = count_stmt.where(condition)

    total = db.execute(count_stmt).scalar() or 0
    instruments = db.execute(
        stmt.order_by(Instrument.CreatedDate.desc(), Instrument.InstrumentID.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()

    directory = load_user_directory(
        db,
        [checkout.UserID for instrument in instruments for checkout in instrument.Checkouts],
    )
    return {
        "instruments": [serialize_instrument(instrument, directory) for instrument in instruments],
        "pagination": build_pagination(page, limit, total),
    }


def list_categories(db: Session) -> list[str]:
    rows = db.execute(select(Instrument.Category).distinct().order_by(Instrument.Category)).all()
    return [str(row[0]) for row in rows if row[0]]


def create_instrument(db: Session, payload: dict[str, Any], acting_user_id: int, acting_role: str | None) -> Instrument:
    require_admin(acting_role)
    quantity = payload.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity")

    now = datetime.now()
    instrument = Instrument(
        Name=_require_text(payload.get("name"), "name", "Name"),
        Description=_require_text(payload.get("description"), "description", "Description"),
        Category=_require_text(payload.get("category"), "category", "Category"),
        Location=payload.get("location"),
        ManualGuide=payload.get("manualGuide"),
        ImagePath=payload.get("imagePath"),
        Status=_validate_status(payload.get("status")),
        Specifications=normalize_specifications(payload.get("specifications")),
        Quantity=quantity,
        AvailableQuantity=quantity,
        TotalUsageMinutes=0,
        UsageCount=0,
        CreatedDate=now,
        UpdatedDate=now,
    )
    db.add(instrument)
    db.flush()
    log_audit(db, "Instrument", instrument.InstrumentID, "InstrumentCreated", f"quantity={quantity}", user_id=acting_user_id)
    db.commit()
    LOGGER.info("Instrument created instrument_id=%s quantity=%s user_id=%s", instrument.InstrumentID, quantity, acting_user_id)
    return instrument


def update_instrument(
    db: Session,
    instrument_id: int,
    changes: dict[str, Any],
    acting_user_id: int,
    acting_role: str | None,
) -> Instrument:
    """Apply descriptive changes and, when present, a capacity change.

    Runs under the instrument's ledger transaction so an edit cannot interleave
    with a start or stop on the same instrument.
    """
    require_admin(acting_role)

    def action() -> Instrument:
        now = datetime.now()
        if changes.get("quantity") is not None:
            # set_capacity reloads the row, so it has to run before any edits below.
            previous = load_instrument(db, instrument_id).Quantity
            instrument = set_capacity(db, instrument_id, changes["quantity"], acting_role, now=now)
            log_audit(
                db,
                "Instrument",
                instrument_id,
                "CapacityChanged",
                f"from={previous} to={instrument.Quantity} occupied={occupied_quantity(instrument.Checkouts)}",
                user_id=acting_user_id,
            )
        else:
            instrument = load_instrument(db, instrument_id, for_update=True)

        changed: list[str] = []
        for field, column in _DETAIL_FIELDS.items():
            if field not in changes:
                continue
            value = changes[field]
            if field in ("name", "description", "category"):
                value = _require_text(value, field, column)
            elif field == "status":
                if value is None:
                    continue
                value = _validate_status(value)
            elif field == "specifications":
                # null clears the bag
                value = normalize_specifications(value)
            setattr(instrument, column, value)
            changed.append(field)

        instrument.UpdatedDate = now
        if changed:
            log_audit(db, "Instrument", instrument_id, "InstrumentUpdated", f"fields={','.join(changed)}", user_id=acting_user_id)
        return instrument

    instrument = instrument_transaction(db, instrument_id, action, "update")
    LOGGER.info("Instrument updated instrument_id=%s user_id=%s", instrument_id, acting_user_id)
    return instrument


def delete_instrument(db: Session, instrument_id: int, acting_user_id: int, acting_role: str | None) -> None:
    def action() -> None:
        remove(db, instrument_id, acting_role)
        log_audit(db, "Instrument", instrument_id, "InstrumentDeleted", None, user_id=acting_user_id)

    instrument_transaction(db, instrument_id, action, "delete")
    LOGGER.info("Instrument deleted instrument_id=%s user_id=%s", instrument_id, acting_user_id)
