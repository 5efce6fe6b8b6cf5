"""
Delete one-time verification codes that expired more than --hours ago.

Usage:
  python scripts/cleanup_expired_otp_codes.py [--hours 24]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.dms.modules.mfa.service import cleanup_expired_codes  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Purge expired OTP codes.")
    parser.add_argument("--hours", type=int, default=24)
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    with script_session(args.database_url) as s:
        deleted = cleanup_expired_codes(s, older_than_hours=args.hours)
    print(f"Deleted {deleted} expired code(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
