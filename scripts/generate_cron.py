#!/usr/bin/env python3
"""
generate_cron.py
----------------

Prints the recommended crontab entry for the account-expiry notice job.
One daily run with `--days 30` covers both the one-off 30-day notice and
the daily escalation for accounts under 8 days from expiry.
"""

import argparse
import os
import sys
from typing import List, Optional

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.append(REPO_ROOT)

from scheduled_processes.emails.daily.account_expiry_notice_daily import validate_window  # noqa: E402

JOB_SCRIPT = "scheduled_processes/emails/daily/account_expiry_notice_daily.py"


def cron_lines(repo_root: str, python: str = "/usr/bin/python3", days: int = 30, hour: int = 7) -> List[str]:
    days = validate_window(days)
    return [
        "# Account expiry notices to approvers (daily)",
        f"0 {hour} * * * cd {repo_root} && {python} {JOB_SCRIPT} --days {days} >> logs/account_expiry_notice_cron.log 2>&1",
    ]


def _days_arg(value: str) -> int:
    try:
        return validate_window(int(value))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Print the crontab entry for the account expiry notice job")
    parser.add_argument("days", nargs="?", type=_days_arg, default=30, help="Look-ahead window in days (0-30)")
    args = parser.parse_args(argv)

    print("# Account expiry notice scheduled job")
    print("# Add these lines to your crontab (crontab -e)")
    print(f"# REPO_ROOT = {REPO_ROOT}")
    print("")
    for line in cron_lines(REPO_ROOT, days=args.days):
        print(line)
    print("")
    print("# Transcripts and the status flag are written under EXPIRY_LOG_DIR")
    print(f"#   (default {os.path.join(REPO_ROOT, 'logs')})")


if __name__ == "__main__":
    main()
