import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(db_url: str):
    connect_args = {}
    if db_url.startswith("sqlite"):
        # Request handlers run in a thread pool; each gets its own connection.
        connect_args["check_same_thread"] = False
    return create_engine(
        db_url,
        pool_pre_ping=True,
        connect_args=connect_args,
        future=True,
    )


def build_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


LAB_BOOKING_DB_URL = _require_env("LAB_BOOKING_DB_URL")

engine_lab = build_engine(LAB_BOOKING_DB_URL)

SessionLocalLab = build_sessionmaker(engine_lab)
