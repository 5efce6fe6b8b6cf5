"""
Mark open pipelines with no recorded activity as lost.

Usage:
  python scripts/detect_inactive_pipelines.py [--days 7] [--dry-run]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.modules.pipelines.service import INACTIVITY_DAYS, detect_inactive_pipelines  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Auto-close inactive sales pipelines.")
    parser.add_argument("--days", type=int, default=INACTIVITY_DAYS, help=f"Inactivity threshold in days (default {INACTIVITY_DAYS}).")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL.")
    args = parser.parse_args()
    if args.days < 1:
        parser.error("--days must be at least 1")

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with script_session(args.database_url) as s:
        count, details = detect_inactive_pipelines(s, days=args.days, dry_run=args.dry_run)

    for d in details:
        inactive = d["days_inactive"] if d["days_inactive"] is not None else "never active"
        print(f"  {d['pipeline_id']}  {d['customer_name']}  {d['previous_stage']} -> lost  ({inactive})")
    print(f"{'[dry run] ' if args.dry_run else ''}{count} pipeline(s) marked lost.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
