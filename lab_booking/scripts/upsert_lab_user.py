#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import os
import secrets
from datetime import datetime

from sqlalchemy import create_engine, text


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one LabUsers record directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email; matched case-insensitively")
    parser.add_argument("--name", default=None, help="Display name. Required when creating a user.")
    parser.add_argument("--role", choices=["admin", "user"], default="admin")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Required when creating a user; omit to keep the existing one.",
    )
    parser.add_argument("--deactivate", action="store_true", help="Mark the account inactive.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LAB_BOOKING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LAB_BOOKING_DB_URL env var.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    email = args.email.strip().lower()
    if "@" not in email:
        parser.error("--email must be a valid email address.")
    if not args.db_url:
        parser.error("Missing DB URL. Set LAB_BOOKING_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 6:
        parser.error("--password must be at least 6 characters.")

    password_hash = None
    password_salt = None
    if args.password is not None:
        password_salt = secrets.token_hex(16)
        password_hash = _password_hash(args.password.strip(), password_salt)

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    with engine.begin() as conn:
        existing = conn.execute(
            text("SELECT UserID FROM LabUsers WHERE Email = :email"),
            {"email": email},
        ).scalar()
        params = {
            "email": email,
            "name": (args.name or "").strip() or None,
            "role": args.role,
            "is_active": not args.deactivate,
            "password_hash": password_hash,
            "password_salt": password_salt,
            "now": datetime.now(),
        }
        if existing is None:
            if not params["name"]:
                parser.error("--name is required when creating a user.")
            if password_hash is None:
                parser.error("--password is required when creating a user.")
            conn.execute(
                text(
                    """
                    INSERT INTO LabUsers (Email, Name, Role, IsActive, PasswordHash, PasswordSalt, CreatedDate)
                    VALUES (:email, :name, :role, :is_active, :password_hash, :password_salt, :now)
                    """
                ),
                params,
            )
        else:
            conn.execute(
                text(
                    """
                    UPDATE LabUsers SET
                        Name = COALESCE(:name, Name),
                        Role = :role,
                        IsActive = :is_active,
                        PasswordHash = COALESCE(:password_hash, PasswordHash),
                        PasswordSalt = COALESCE(:password_salt, PasswordSalt)
                    WHERE Email = :email
                    """
                ),
                params,
            )
        row = conn.execute(
            text("SELECT UserID, Email, Role, IsActive FROM LabUsers WHERE Email = :email"),
            {"email": email},
        ).mappings().first()

    if not row:
        raise RuntimeError("Upsert finished but no row returned.")

    print(
        f"OK user_id={row['UserID']} email={row['Email']} role={row['Role']} "
        f"is_active={bool(row['IsActive'])} created={existing is None}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
