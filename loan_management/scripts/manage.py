#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db.base import Base
from schemas.users import UserCreate
from services.admin_auth_service import PASSWORD_MIN_LENGTH
from services.errors import LoanManagementError
from services.expiry_service import sweep_expired
from services.status_service import reconcile_all_items
from services.user_service import create_user


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Maintenance commands for the loan management database.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LOAN_MANAGEMENT_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LOAN_MANAGEMENT_DB_URL env var.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init", help="Create missing tables.")
    commands.add_parser("check", help="Report items whose stored status disagrees with their loans.")
    commands.add_parser("fix", help="Reconcile every item and report the repairs.")
    commands.add_parser("sweep", help="Remove expired confirmed reservations.")

    admin = commands.add_parser("create-admin", help="Create an administrator account.")
    admin.add_argument("--email", required=True)
    admin.add_argument("--first-name", required=True)
    admin.add_argument("--last-name", required=True)
    admin.add_argument("--password", required=True, help="At least 8 characters.")
    return parser


def _print_repairs(report: dict) -> None:
    for repair in report["repairs"]:
        print(
            f"WARN item_id={repair['itemID']} name={repair['itemName']!r} "
            f"{repair['oldStatus']} -> {repair['newStatus']} "
            f"closed_loans={repair['closedLoanIDs']} repaired_loans={repair['repairedLoanIDs']}"
        )


def run(args: argparse.Namespace) -> int:
    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    if args.command == "init":
        Base.metadata.create_all(bind=engine)
        print("OK tables created")
        return 0

    db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)()
    try:
        if args.command in {"check", "fix"}:
            report = reconcile_all_items(db, fix=args.command == "fix")
            _print_repairs(report)
            print(f"OK checked={report['checked']} mismatches={len(report['repairs'])} fix={report['fix']}")
            return 1 if report["repairs"] and args.command == "check" else 0
        if args.command == "sweep":
            print(f"OK expired_reservations={sweep_expired(db)}")
            return 0
        if args.command == "create-admin":
            user, _ = create_user(
                db,
                UserCreate(
                    email=args.email,
                    firstName=args.first_name,
                    lastName=args.last_name,
                    isAdmin=True,
                ),
                password=args.password,
            )
            print(f"OK user_id={user.UserID} email={user.Email}")
            return 0
    except LoanManagementError as exc:
        db.rollback()
        print(f"ERROR {exc.kind}: {exc.message}", file=sys.stderr)
        return 2
    finally:
        db.close()
    return 0


def main() -> int:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args()
    if not args.db_url:
        parser.error("Missing DB URL. Set LOAN_MANAGEMENT_DB_URL or pass --db-url.")
    if args.command == "create-admin" and len(args.password) < PASSWORD_MIN_LENGTH:
        parser.error(f"--password must be at least {PASSWORD_MIN_LENGTH} characters.")
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
