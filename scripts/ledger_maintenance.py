"""
Operator script for the credit ledger.

Commands:
- seed-packages: insert any missing default credit packages (existing rows are untouched)
- audit: replay every account's transactions and report broken balances

Guardrails:
- audit is read-only; exit code 1 when any account fails
- Logs actions to logs/ with a timestamped file
"""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path
import sys
from typing import Iterable


# Allow `import app.*` from backend/
REPO_ROOT = Path(__file__).resolve().parents[1]
BACKEND_DIR = REPO_ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))


from app.core.config import settings  # noqa: E402
from app.core.database import SessionLocal  # noqa: E402
from app.models.api_token import UserApiToken  # noqa: E402,F401
from app.models.credit import CreditBalance, CreditTransaction  # noqa: E402,F401
from app.models.demo_credit import DemoCredit  # noqa: E402,F401
from app.models.payment import CreditPackage, PaymentIntent  # noqa: E402,F401
from app.models.user import User  # noqa: E402,F401
from app.services.credits import CreditsService  # noqa: E402
from app.services.packages import PackagesService  # noqa: E402


def utc_now_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def log_write(fp: Path, lines: Iterable[str]) -> None:
    fp.parent.mkdir(parents=True, exist_ok=True)
    with fp.open("a", encoding="utf-8") as f:
        for line in lines:
            f.write(line.rstrip("\n") + "\n")


def seed_packages(log_path: Path) -> int:
    with SessionLocal() as db:
        created = PackagesService(db).seed_defaults()
    log_write(log_path, [f"[packages] created={created}"])
    print(f"Seeded {created} package(s).")
    return 0


def audit(log_path: Path, user_ids: list[int] | None) -> int:
    with SessionLocal() as db:
        report = CreditsService(db).audit_ledgers(user_ids)

    if not report:
        log_write(log_path, ["[audit] all accounts consistent"])
        print("All accounts consistent.")
        return 0

    for user_id, problems in report.items():
        log_write(log_path, [f"[audit] user={user_id} {problem}" for problem in problems])
        print(f"user {user_id}:")
        for problem in problems:
            print(f"  - {problem}")
    return 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Credit ledger maintenance.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("seed-packages", help="Insert missing default credit packages.")
    audit_parser = sub.add_parser("audit", help="Verify ledger history for every account.")
    audit_parser.add_argument("--user-id", type=int, action="append", dest="user_ids", help="Limit to these users.")
    args = parser.parse_args()

    log_path = REPO_ROOT / "logs" / f"ledger_{args.command}_{utc_now_stamp()}.log"
    log_write(log_path, [f"[start] {datetime.now(timezone.utc).isoformat()} env={settings.ENV}"])

    if args.command == "seed-packages":
        code = seed_packages(log_path)
    else:
        code = audit(log_path, args.user_ids)

    log_write(log_path, [f"[done] exit={code} {datetime.now(timezone.utc).isoformat()}"])
    return code


if __name__ == "__main__":
    raise SystemExit(main())
