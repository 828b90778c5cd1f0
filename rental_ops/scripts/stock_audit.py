#!/usr/bin/env python3
"""Stock ledger and route integrity checks for RentalOps."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Engine

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.engine import create_store_engine, make_session_factory
from services.errors import unit_of_work
from services.stock_ledger import find_drift, recompute_many


EXPECTED_TABLES = [
    "Equipment",
    "Rental",
    "RentalItems",
    "Routes",
    "RouteStops",
    "AuditLogs",
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_route_checks(engine: Engine) -> list[CheckResult]:
    return [
        _count_check(
            engine,
            "routestops:sequence_gaps",
            """
            SELECT COUNT(*)
            FROM (
                SELECT RouteID
                FROM RouteStops
                GROUP BY RouteID
                HAVING MIN(Sequence) <> 1 OR MAX(Sequence) <> COUNT(*)
            ) g
            """,
        ),
        _count_check(
            engine,
            "routestops:pending_on_terminal_rental",
            """
            SELECT COUNT(*)
            FROM RouteStops s
            JOIN Rental r ON r.RentalID = s.RentalID
            WHERE s.Status = 'PENDING' AND r.Status IN ('COMPLETED', 'CANCELLED')
            """,
        ),
        _count_check(
            engine,
            "routes:completed_with_pending_stops",
            """
            SELECT COUNT(*)
            FROM Routes rt
            JOIN RouteStops s ON s.RouteID = rt.RouteID
            WHERE rt.Status = 'COMPLETED' AND s.Status <> 'COMPLETED'
            """,
        ),
        _count_check(
            engine,
            "equipment:rented_above_total",
            "SELECT COUNT(*) FROM Equipment WHERE RentedQty > TotalQty",
        ),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def run_audit(engine: Engine, fix: bool = False) -> int:
    session_factory = make_session_factory(engine)
    db = session_factory()
    try:
        with unit_of_work(db):
            drift = find_drift(db)
            if fix and drift:
                recompute_many(db, [row.equipment_id for row in drift])
    finally:
        db.close()

    _print_section("Stock Ledger")
    if not drift:
        print("[OK] equipment:rented_qty_matches_rentals :: drift=0")
    for row in drift:
        action = "repaired" if fix else "FAIL"
        print(f"[{action}] equipment:{row.equipment_id} stored={row.stored} expected={row.expected}")

    checks = _run_route_checks(engine)
    _print_results("Route Checks", checks)
    _print_row_counts(engine)

    failed = any(not check.ok for check in checks) or (bool(drift) and not fix)
    return 1 if failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="RentalOps stock ledger audit")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_OPS_DB_URL", ""))
    parser.add_argument("--fix", action="store_true", help="Recompute RentedQty for drifted equipment.")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_OPS_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = create_store_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    return run_audit(engine, fix=args.fix)


if __name__ == "__main__":
    sys.exit(main())
