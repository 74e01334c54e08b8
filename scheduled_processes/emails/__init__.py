"""
Email-related scheduled jobs.

This package holds small, single-purpose scripts that are invoked via cron,
for example:
  - daily/account_expiry_notice_daily.py

Each module defines a `main()` entrypoint and is runnable as a standalone
script.
"""
