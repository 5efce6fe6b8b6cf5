"""
Trigger compliance reminders whose remind_at has passed.

Usage:
  python scripts/process_compliance_reminders.py [--dry-run]

Run from cron every few minutes.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.modules.compliance.service import process_due_reminders  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Process due compliance reminders.")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be triggered without changing anything.")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with script_session(args.database_url) as s:
        result = process_due_reminders(s, dry_run=args.dry_run)

    prefix = "[dry run] would process" if args.dry_run else "Processed"
    print(f"{prefix} {result.processed} reminder(s); {result.escalated} escalated.")
    if result.ids:
        print("Reminder ids: " + ", ".join(str(i) for i in result.ids))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
