from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.booking_models import USER_ROLES, LabUser
from services.errors import NotFoundError, ValidationError
from services.pagination import build_pagination, normalize_paging


SESSION_TTL_SECONDS = 60 * 60 * 12
DEFAULT_ROLE = "user"
MIN_PASSWORD_LENGTH = 6

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    if role in USER_ROLES:
        return role
    return DEFAULT_ROLE


def _normalize_email(raw_email: str | None) -> str:
    return (raw_email or "").strip().lower()


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _set_password(user: LabUser, password: str) -> None:
    trimmed = str(password or "").strip()
    if len(trimmed) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.", field="password")
    salt = secrets.token_hex(16)
    user.PasswordSalt = salt
    user.PasswordHash = _password_hash(trimmed, salt)


def serialize_user(user: LabUser) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "email": user.Email,
        "name": user.Name,
        "role": user.Role,
        "isActive": bool(user.IsActive),
        "lastLogin": user.LastLogin,
        "createdDate": user.CreatedDate,
    }


def create_user_record(db: Session, *, email: str, name: str, password: str, role: str | None = None) -> LabUser:
    normalized_email = _normalize_email(email)
    display_name = (name or "").strip()
    if not normalized_email or "@" not in normalized_email:
        raise ValidationError("A valid email is required.", field="email")
    if not display_name:
        raise ValidationError("Name is required.", field="name")
    existing = db.execute(select(LabUser).where(LabUser.Email == normalized_email)).scalars().first()
    if existing:
        raise ValidationError("A user with this email already exists.", field="email")

    user = LabUser(
        Email=normalized_email,
        Name=display_name,
        Role=_normalize_role(role),
        IsActive=True,
        CreatedDate=datetime.now(),
    )
    _set_password(user, password)
    db.add(user)
    try:
        db.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent registration.
        db.rollback()
        raise ValidationError("A user with this email already exists.", field="email") from exc
    return user


def authenticate(db: Session, email: str, password: str) -> LabUser | None:
    normalized_email = _normalize_email(email)
    if not normalized_email or not password:
        return None
    user = db.execute(select(LabUser).where(LabUser.Email == normalized_email)).scalars().first()
    if not user or not user.PasswordHash or not user.PasswordSalt:
        return None
    candidate = _password_hash(str(password).strip(), user.PasswordSalt)
    if not hmac.compare_digest(candidate, user.PasswordHash):
        return None
    return user


def get_user_or_404(db: Session, user_id: int) -> LabUser:
    user = db.get(LabUser, user_id)
    if not user:
        raise NotFoundError("User not found", userID=user_id)
    return user


def load_user_directory(db: Session, user_ids: Iterable[int | None]) -> dict[int, dict[str, Any]]:
    wanted = {int(value) for value in user_ids if value}
    if not wanted:
        return {}
    rows = db.execute(select(LabUser).where(LabUser.UserID.in_(wanted))).scalars().all()
    return {
        row.UserID: {"userID": row.UserID, "name": row.Name, "email": row.Email}
        for row in rows
    }


def list_users(
    db: Session,
    *,
    search: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict[str, Any]:
    page, limit = normalize_paging(page, limit)
    stmt = select(LabUser)
    count_stmt = select(func.count(LabUser.UserID))
    filters = []
    query = (search or "").strip()
    if query:
        filters.append(or_(LabUser.Name.ilike(f"%{query}%"), LabUser.Email.ilike(f"%{query}%")))
    if role:
        filters.append(LabUser.Role == _normalize_role(role))
    if is_active is not None:
        filters.append(LabUser.IsActive == is_active)
    for condition in filters:
        stmt = stmt.where(condition)
        count_stmt = count_stmt.where(condition)

    total = db.execute(count_stmt).scalar() or 0
    users = db.execute(
        stmt.order_by(LabUser.CreatedDate.desc(), LabUser.UserID.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        "users": [serialize_user(user) for user in users],
        "pagination": build_pagination(page, limit, total),
    }


def set_user_status(db: Session, user_id: int, is_active: bool) -> LabUser:
    if not isinstance(is_active, bool):
        raise ValidationError("isActive must be a boolean value", field="isActive")
    user = get_user_or_404(db, user_id)
    user.IsActive = is_active
    db.flush()
    return user


def set_user_role(db: Session, user_id: int, role: str, acting_user_id: int) -> LabUser:
    if role not in USER_ROLES:
        raise ValidationError("Role must be either admin or user", field="role")
    if int(user_id) == int(acting_user_id) and role == "user":
        raise ValidationError("You cannot demote yourself", field="role")
    user = get_user_or_404(db, user_id)
    user.Role = role
    db.flush()
    return user


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def create_session(payload: dict[str, Any]) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_encode(signature)}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _decode(encoded_sig)):
            return None
        decoded_session = json.loads(_decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None
    if now >= float(decoded_session.get("expiresAt") or 0.0):
        return None

    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED_TOKENS.items()):
            if now >= revoked_exp:
                _REVOKED_TOKENS.pop(revoked_token, None)
        if token in _REVOKED_TOKENS:
            return None
    return decoded_session


def remove_session(token: str | None) -> None:
    session = get_session(token)
    if not session:
        return
    with _LOCK:
        _REVOKED_TOKENS[str(token)] = float(session.get("expiresAt") or 0.0)
