#!/usr/bin/env python3
"""Database overview and ledger integrity checks for the lab booking service."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import Select, create_engine, func, inspect, select, text
from sqlalchemy import column as sql_column
from sqlalchemy import table as sql_table
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Instruments",
    "InstrumentCheckouts",
    "UsageSessions",
    "LabUsers",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Instruments": [
        "InstrumentID",
        "Name",
        "Category",
        "Quantity",
        "AvailableQuantity",
        "Status",
        "TotalUsageMinutes",
        "UsageCount",
        "Version",
    ],
    "InstrumentCheckouts": ["CheckoutID", "InstrumentID", "UserID", "StartedAt", "Quantity"],
    "UsageSessions": [
        "SessionID",
        "UserID",
        "InstrumentID",
        "StartedAt",
        "EndedAt",
        "DurationMinutes",
        "Quantity",
        "Status",
        "TerminatedBy",
        "TerminationReason",
    ],
    "LabUsers": ["UserID", "Email", "Name", "Role", "IsActive", "PasswordHash", "PasswordSalt", "LastLogin"],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

# name -> query returning the number of offending rows
INTEGRITY_QUERIES: dict[str, tuple[tuple[str, ...], str]] = {
    "checkouts:orphan_instrumentid": (
        ("InstrumentCheckouts", "Instruments"),
        """
        SELECT COUNT(*)
        FROM InstrumentCheckouts c
        LEFT JOIN Instruments i ON i.InstrumentID = c.InstrumentID
        WHERE i.InstrumentID IS NULL
        """,
    ),
    "checkouts:non_positive_quantity": (
        ("InstrumentCheckouts",),
        "SELECT COUNT(*) FROM InstrumentCheckouts WHERE Quantity < 1",
    ),
    "checkouts:without_active_session": (
        ("InstrumentCheckouts", "UsageSessions"),
        """
        SELECT COUNT(*)
        FROM InstrumentCheckouts c
        WHERE NOT EXISTS (
            SELECT 1 FROM UsageSessions s
            WHERE s.InstrumentID = c.InstrumentID
              AND s.UserID = c.UserID
              AND s.Status = 'active'
        )
        """,
    ),
    "sessions:active_without_checkout": (
        ("InstrumentCheckouts", "UsageSessions"),
        """
        SELECT COUNT(*)
        FROM UsageSessions s
        WHERE s.Status = 'active'
          AND NOT EXISTS (
            SELECT 1 FROM InstrumentCheckouts c
            WHERE c.InstrumentID = s.InstrumentID
              AND c.UserID = s.UserID
          )
        """,
    ),
    "sessions:finished_without_end": (
        ("UsageSessions",),
        "SELECT COUNT(*) FROM UsageSessions WHERE Status <> 'active' AND EndedAt IS NULL",
    ),
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {str(column["name"]) for column in inspect(engine).get_columns(table_name)}


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    tables = _table_names(engine)
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    tables = _table_names(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    tables = _table_names(engine)
    checks: list[CheckResult] = []

    for name, (required, sql) in INTEGRITY_QUERIES.items():
        if not all(table in tables for table in required):
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))

    if {"Instruments", "InstrumentCheckouts"} <= tables:
        rows = _rows(
            engine,
            """
            SELECT i.InstrumentID, i.Quantity, COALESCE(SUM(c.Quantity), 0) AS Occupied
            FROM Instruments i
            LEFT JOIN InstrumentCheckouts c ON c.InstrumentID = i.InstrumentID
            GROUP BY i.InstrumentID, i.Quantity
            """,
        )
        # Over capacity is legal after a shrink; reported, not failed.
        over = [int(row[0]) for row in rows if int(row[2] or 0) > int(row[1] or 0)]
        checks.append(
            CheckResult(
                "instruments:occupied_over_capacity",
                True,
                f"count={len(over)}" + (f" ids={','.join(str(i) for i in over)}" if over else ""),
            )
        )
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    tables = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        with engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(sql_table(table))).scalar()
        print(f"{table}: {int(count or 0)}")


def _print_index_summary(engine: Engine) -> None:
    _print_section("Index Summary (key tables)")
    inspector = inspect(engine)
    tables = _table_names(engine)
    for table in ["InstrumentCheckouts", "UsageSessions", "LabUsers"]:
        if table not in tables:
            print(f"{table}: missing")
            continue
        print(f"{table}:")
        for index in inspector.get_indexes(table):
            print(f"  - {index['name']} unique={bool(index.get('unique'))} cols={','.join(index['column_names'])}")
        for constraint in inspector.get_unique_constraints(table):
            print(f"  - {constraint['name']} unique=True cols={','.join(constraint['column_names'])}")


SAMPLE_QUERIES: dict[str, tuple[str, ...]] = {
    "UsageSessions": ("SessionID", "InstrumentID", "UserID", "Status", "DurationMinutes"),
    "AuditLogs": ("AuditID", "EntityType", "Action", "UserID", "CreatedAt"),
}


def sample_statement(table_name: str, columns: tuple[str, ...], sample_size: int) -> Select:
    # First column is the key; the dialect renders LIMIT or TOP.
    return (
        select(*(sql_column(name) for name in columns))
        .select_from(sql_table(table_name))
        .order_by(sql_column(columns[0]).desc())
        .limit(max(1, sample_size))
    )


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    tables = _table_names(engine)

    for table_name, columns in SAMPLE_QUERIES.items():
        if table_name not in tables:
            continue
        with engine.connect() as conn:
            rows = conn.execute(sample_statement(table_name, columns, sample_size)).all()
        print(f"{table_name} (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Lab booking DB overview")
    parser.add_argument("--db-url", default=os.environ.get("LAB_BOOKING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LAB_BOOKING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_index_summary(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
