"""
Refresh idle minutes on active user sessions and time out the ones past the auto-logout limit.

Usage:
  python scripts/update_idle_times.py
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.modules.time_tracking.service import update_idle_times  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Update idle times for active sessions.")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with script_session(args.database_url) as s:
        active = update_idle_times(s)
    print(f"Updated {active} active session(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
