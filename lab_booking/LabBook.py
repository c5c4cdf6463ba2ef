import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from db.base import Base
from db.deps import get_lab_db
from db.session import engine_lab
from models.booking_models import LabUser
from schemas.instruments import InstrumentCreate, InstrumentUpdate
from schemas.usage import ForceStopRequest, StartUsageRequest, StopUsageRequest
from schemas.users import LoginRequest, RegisterRequest, UserRoleUpdate, UserStatusUpdate
from services.audit_service import list_audit_entries, log_audit
from services.errors import BookingError
from services.instrument_service import (
    create_instrument,
    delete_instrument,
    get_instrument_view,
    list_categories,
    list_instruments,
    serialize_instrument_with_users,
    update_instrument,
)
from services.session_controller import force_stop_session, start_session, stop_session
from services.usage_service import (
    dashboard_statistics,
    instrument_statistics,
    list_active_sessions,
    list_usage_history,
    serialize_usage_rows,
    usage_statistics,
)
from services.user_access_service import (
    authenticate,
    create_session,
    create_user_record,
    get_session,
    get_user_or_404,
    list_users,
    remove_session,
    serialize_user,
    set_user_role,
    set_user_status,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if CREATE_SCHEMA_ON_STARTUP:
        Base.metadata.create_all(engine_lab)
    yield


app = FastAPI(title="Lab Instrument Booking", lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="lab_booking_session",
        same_site="lax",
        https_only=False,
    )

CREATE_SCHEMA_ON_STARTUP = _parse_bool_env("LAB_BOOKING_CREATE_SCHEMA", "true")
DASHBOARD_WINDOW_DAYS = int(os.environ.get("LAB_BOOKING_DASHBOARD_WINDOW_DAYS") or "30")
AUTH_LOGGER = logging.getLogger("lab_booking.auth")


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _cookie_session(request: Request) -> dict:
    if "session" not in request.scope:
        return {}
    return request.session


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        return dict(session_from_token)
    session_from_cookie = get_session(_cookie_session(request).get("token"))
    if session_from_cookie:
        return dict(session_from_cookie)
    return None


def _current_user(request: Request, session_token: str | None, db: Session, role: str | None = None) -> LabUser:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    try:
        user_id = int(session.get("userID") or 0)
    except (TypeError, ValueError):
        user_id = 0
    user = db.get(LabUser, user_id) if user_id > 0 else None
    if not user or not user.IsActive:
        raise HTTPException(status_code=401, detail="Account is not active.")
    if role == "admin" and user.Role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required.")
    return user


def _start_login_session(request: Request, user: LabUser) -> dict:
    session_payload = {"userID": user.UserID, "role": user.Role, "name": user.Name}
    token = create_session(session_payload)
    _cookie_session(request)["token"] = token
    return {"sessionToken": token, "user": serialize_user(user)}


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lab_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/register", status_code=201)
def auth_register(payload: RegisterRequest, request: Request, db: Session = Depends(get_lab_db)):
    try:
        user = create_user_record(db, email=payload.email, name=payload.name, password=payload.password)
        user.LastLogin = datetime.now()
        log_audit(db, "User", user.UserID, "UserRegistered", None, user_id=user.UserID)
        db.commit()
    except BookingError:
        db.rollback()
        raise
    AUTH_LOGGER.info("User registered user_id=%s", user.UserID)
    return _start_login_session(request, user)


@app.post("/api/auth/login")
def auth_login(payload: LoginRequest, request: Request, db: Session = Depends(get_lab_db)):
    user = authenticate(db, payload.email, payload.password)
    if not user:
        AUTH_LOGGER.warning("Login failed email=%s reason=invalid_credentials", payload.email.strip().lower())
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    if not user.IsActive:
        AUTH_LOGGER.warning("Login failed user_id=%s reason=inactive", user.UserID)
        raise HTTPException(status_code=401, detail="Account is deactivated.")
    user.LastLogin = datetime.now()
    db.commit()
    AUTH_LOGGER.info("Login success user_id=%s role=%s", user.UserID, user.Role)
    return _start_login_session(request, user)


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    cookie = _cookie_session(request)
    remove_session(x_session_token or cookie.get("token"))
    cookie.clear()
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(
    request: Request,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    return {"user": serialize_user(user)}


@app.get("/api/instruments")
def get_instruments(
    request: Request,
    category: str | None = Query(None),
    status: str | None = Query(None),
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db)
    return list_instruments(db, category=category, status=status, search=search, page=page, limit=limit)


@app.get("/api/instruments/categories")
def get_instrument_categories(
    request: Request,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db)
    return list_categories(db)


@app.get("/api/instruments/{instrument_id}")
def get_instrument(
    request: Request,
    instrument_id: int,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db)
    return get_instrument_view(db, instrument_id)


@app.post("/api/instruments", status_code=201)
def post_instrument(
    request: Request,
    payload: InstrumentCreate,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _current_user(request, x_session_token, db, role="admin")
    try:
        instrument = create_instrument(db, payload.model_dump(), admin.UserID, admin.Role)
    except BookingError:
        db.rollback()
        raise
    return {
        "message": "Instrument created successfully",
        "instrument": serialize_instrument_with_users(db, instrument),
    }


@app.put("/api/instruments/{instrument_id}")
def put_instrument(
    request: Request,
    instrument_id: int,
    payload: InstrumentUpdate,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _current_user(request, x_session_token, db, role="admin")
    instrument = update_instrument(db, instrument_id, payload.model_dump(exclude_unset=True), admin.UserID, admin.Role)
    return {
        "message": "Instrument updated successfully",
        "instrument": serialize_instrument_with_users(db, instrument),
    }


@app.delete("/api/instruments/{instrument_id}")
def remove_instrument(
    request: Request,
    instrument_id: int,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _current_user(request, x_session_token, db, role="admin")
    delete_instrument(db, instrument_id, admin.UserID, admin.Role)
    return {"message": "Instrument deleted successfully"}


@app.get("/api/instruments/{instrument_id}/stats")
def get_instrument_stats(
    request: Request,
    instrument_id: int,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    return instrument_statistics(db, instrument_id)


@app.get("/api/instruments/{instrument_id}/audit")
def get_instrument_audit(
    request: Request,
    instrument_id: int,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    return list_audit_entries(db, "Instrument", instrument_id, limit=limit)


@app.post("/api/usage/start")
def start_usage(
    request: Request,
    payload: StartUsageRequest,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    outcome = start_session(db, payload.instrumentID, user.UserID, payload.quantity)
    return {
        "message": "Started using instrument successfully",
        "instrument": serialize_instrument_with_users(db, outcome.instrument),
        "usageHistory": outcome.usage.SessionID,
    }


@app.post("/api/usage/stop")
def stop_usage(
    request: Request,
    payload: StopUsageRequest,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    outcome = stop_session(db, payload.instrumentID, user.UserID, notes=payload.notes)
    return {
        "message": "Stopped using instrument successfully",
        "instrument": serialize_instrument_with_users(db, outcome.instrument),
        "usageHistory": serialize_usage_rows(db, [outcome.usage])[0],
        "duration": outcome.duration_minutes,
    }


@app.post("/api/usage/force-stop")
def force_stop_usage(
    request: Request,
    payload: ForceStopRequest,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _current_user(request, x_session_token, db, role="admin")
    outcome = force_stop_session(
        db,
        payload.instrumentID,
        payload.userID,
        admin_id=admin.UserID,
        admin_role=admin.Role,
        reason=payload.reason,
    )
    return {
        "message": "Usage terminated successfully",
        "instrument": serialize_instrument_with_users(db, outcome.instrument),
        "usageHistory": serialize_usage_rows(db, [outcome.usage])[0],
        "duration": outcome.duration_minutes,
    }


@app.get("/api/usage/history/me")
def get_my_usage_history(
    request: Request,
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    payload = list_usage_history(db, user_id=user.UserID, status=status, page=page, limit=limit)
    payload["totalUsageTime"] = usage_statistics(db, user_id=user.UserID)["totalTime"]
    return payload


@app.get("/api/usage/history/all")
def get_all_usage_history(
    request: Request,
    status: str | None = Query(None),
    instrument_id: int | None = Query(None, alias="instrumentID"),
    user_id: int | None = Query(None, alias="userID"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    return list_usage_history(
        db,
        user_id=user_id,
        instrument_id=instrument_id,
        status=status,
        page=page,
        limit=limit,
    )


@app.get("/api/usage/active/me")
def get_my_active_usage(
    request: Request,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    return list_active_sessions(db, user_id=user.UserID)


@app.get("/api/usage/active")
def get_active_usage(
    request: Request,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    return list_active_sessions(db)


@app.get("/api/usage/stats")
def get_usage_stats(
    request: Request,
    user_id: int | None = Query(None, alias="userID"),
    instrument_id: int | None = Query(None, alias="instrumentID"),
    days: int | None = Query(None, ge=1, le=3650),
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    if user.Role != "admin":
        if user_id is not None and user_id != user.UserID:
            raise HTTPException(status_code=403, detail="Admin role required.")
        user_id = user.UserID
    since = datetime.now() - timedelta(days=days) if days else None
    stats = usage_statistics(db, user_id=user_id, instrument_id=instrument_id, since=since)
    stats.update({"userID": user_id, "instrumentID": instrument_id, "days": days})
    return stats


@app.get("/api/users/profile")
def get_profile(
    request: Request,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _current_user(request, x_session_token, db)
    return {
        "user": serialize_user(user),
        "currentlyUsing": list_active_sessions(db, user_id=user.UserID),
        "stats": usage_statistics(db, user_id=user.UserID),
    }


@app.get("/api/users/all")
def get_all_users(
    request: Request,
    search: str | None = Query(None),
    role: str | None = Query(None),
    is_active: bool | None = Query(None, alias="isActive"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    return list_users(db, search=search, role=role, is_active=is_active, page=page, limit=limit)


@app.get("/api/users/admin/dashboard")
def get_admin_dashboard(
    request: Request,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    return dashboard_statistics(db, window_days=DASHBOARD_WINDOW_DAYS)


@app.get("/api/users/{user_id}")
def get_user(
    request: Request,
    user_id: int,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _current_user(request, x_session_token, db, role="admin")
    user = get_user_or_404(db, user_id)
    return {
        "user": serialize_user(user),
        "currentlyUsing": list_active_sessions(db, user_id=user.UserID),
        "stats": usage_statistics(db, user_id=user.UserID),
    }


@app.patch("/api/users/{user_id}/status")
def patch_user_status(
    request: Request,
    user_id: int,
    payload: UserStatusUpdate,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _current_user(request, x_session_token, db, role="admin")
    try:
        user = set_user_status(db, user_id, payload.isActive)
        log_audit(db, "User", user_id, "UserStatusChanged", f"isActive={payload.isActive}", user_id=admin.UserID)
        db.commit()
    except BookingError:
        db.rollback()
        raise
    return {
        "message": f"User {'activated' if payload.isActive else 'deactivated'} successfully",
        "user": serialize_user(user),
    }


@app.patch("/api/users/{user_id}/role")
def patch_user_role(
    request: Request,
    user_id: int,
    payload: UserRoleUpdate,
    db: Session = Depends(get_lab_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    admin = _current_user(request, x_session_token, db, role="admin")
    try:
        user = set_user_role(db, user_id, payload.role, acting_user_id=admin.UserID)
        log_audit(db, "User", user_id, "UserRoleChanged", f"role={payload.role}", user_id=admin.UserID)
        db.commit()
    except BookingError:
        db.rollback()
        raise
    return {
        "message": f"User role updated to {payload.role} successfully",
        "user": serialize_user(user),
    }
