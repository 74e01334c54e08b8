#!/usr/bin/env python3
"""
Daily email: expiring account notices for approvers.

Looks up directory accounts expiring within the next `--days` days (0-30),
keeps those whose DN contains the category marker (e.g. `OU=Contractors`),
and emails every approver (the account's manager) one table of their
accounts:

  - Username
  - Email Address
  - Expires In  ("1 day" / "N days")

An account is reported when it is exactly `--days` away (one-off long-range
notice) or less than 8 days away (daily escalation). Already expired
accounts within the lookback are reported too unless disabled.

Each run writes a transcript under EXPIRY_LOG_DIR, prunes transcripts older
than EXPIRY_LOG_RETENTION_DAYS, and overwrites EXPIRY_STATUS_FILE with
`0` (success) or `1` (failure).

Environment (see config/settings.py for defaults):
  - LDAP_SERVER_URI, LDAP_BIND_USER, LDAP_BIND_PASSWORD, LDAP_SEARCH_BASE
  - EXPIRY_CATEGORY_MARKER, EXPIRY_INCLUDE_EXPIRED, EXPIRY_EXPIRED_LOOKBACK_DAYS
  - MAIL_TRANSPORT (smtp|resend), MAIL_RELAY_HOST, MAIL_RELAY_PORT, RESEND_API_KEY
  - HELPDESK_EMAIL   (sender, and the contact named in the email)
  - EXPIRY_LOG_DIR, EXPIRY_STATUS_FILE

Usage:
  python3 scheduled_processes/emails/daily/account_expiry_notice_daily.py --days 30
"""

import argparse
import contextlib
import html
import logging
import os
import sys
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

# Make repo modules importable
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))
if REPO_ROOT not in sys.path:
    sys.path.append(REPO_ROOT)

from config.settings import (  # noqa: E402
    MAX_WINDOW_DAYS,
    MIN_WINDOW_DAYS,
    ConfigError,
    ExpiryNoticeConfig,
    default_status_file,
    load_expiry_notice_config,
)
from modules.directory_client import DirectoryClient, DirectoryError  # noqa: E402
from modules.mailer import MailError, send_email  # noqa: E402
from modules.run_log import LOG_FORMAT, prune_logs, transcript, write_status  # noqa: E402
from modules.run_report import RunReport, RunStatus, StageResult  # noqa: E402

logger = logging.getLogger(__name__)

SCRIPT_NAME = "account_expiry_notice_daily"
SUBJECT = "Accounts expiring soon"
ESCALATION_DAYS = 8

# Stages whose partial failures still mark the whole run as failed
FAILING_STAGES = frozenset({"dispatch"})

SendFn = Callable[[str, str, str, str], None]


@dataclass(frozen=True)
class AccountRecord:
    username: str
    email: Optional[str]
    days_remaining: int
    approver_email: str


@dataclass(frozen=True)
class NotificationBatch:
    approver_email: str
    records: Tuple[AccountRecord, ...]


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def validate_window(days: Any) -> int:
    """Return `days` as an int, or raise ValueError when outside 0-30."""
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValueError(f"window must be an integer number of days, got {days!r}")
    if not MIN_WINDOW_DAYS <= days <= MAX_WINDOW_DAYS:
        raise ValueError(f"window must be between {MIN_WINDOW_DAYS} and {MAX_WINDOW_DAYS} days, got {days}")
    return days


def is_eligible(days_remaining: int, window: int) -> bool:
    return days_remaining == window or days_remaining < ESCALATION_DAYS


def days_until(expires: datetime, today: date) -> int:
    """Calendar days from `today` to the local date of `expires`."""
    return (expires.astimezone().date() - today).days


def matches_category(dn: str, marker: str) -> bool:
    return marker.lower() in (dn or "").lower()


def query_bounds(window: int, today: date, lookback_days: int) -> Tuple[datetime, datetime]:
    """Start/end instants for the directory search, covering whole local days."""
    # Each bound gets its own UTC offset; DST may change inside the window
    start = datetime.combine(today - timedelta(days=lookback_days), time.min).astimezone()
    end = datetime.combine(today + timedelta(days=window + 1), time.min).astimezone()
    return start, end


def resolve_record(directory: Any, account: Dict[str, Any], days_remaining: int) -> AccountRecord:
    """fetch account email -> fetch approver identity -> fetch approver email.

    Raises DirectoryError naming the step that failed.
    """
    dn = account["dn"]
    step = "account email"
    try:
        email = directory.get_account_email(dn)
        step = "approver"
        manager_dn = directory.get_manager_dn(dn)
        step = "approver email"
        approver_email = directory.get_email(manager_dn)
    except DirectoryError as e:
        raise DirectoryError(f"{step} lookup failed: {e}") from e
    return AccountRecord(
        username=account["username"],
        email=email,
        days_remaining=days_remaining,
        approver_email=approver_email,
    )


def collect_expiring_accounts(
    directory: Any,
    window: int,
    config: ExpiryNoticeConfig,
    stage: Optional[StageResult] = None,
    today: Optional[date] = None,
) -> Tuple[List[AccountRecord], int, int]:
    """Query the directory and build the eligible AccountRecords.

    Returns (records, candidates, skipped). A failing search raises
    DirectoryError; a failing per-account lookup is logged, counted in
    `skipped` and recorded on `stage`.
    """
    today = today or date.today()
    lookback = config.expired_lookback_days if config.include_expired else 0
    start, end = query_bounds(window, today, lookback)
    logger.info(f"Searching for accounts expiring between {start:%Y-%m-%d %H:%M} and {end:%Y-%m-%d %H:%M}")

    accounts = directory.search_expiring_accounts(start, end)

    records: List[AccountRecord] = []
    candidates = 0
    skipped = 0
    for account in accounts:
        if not matches_category(account.get("dn", ""), config.category_marker):
            continue
        days_remaining = days_until(account["expires"], today)
        if days_remaining < 0 and not config.include_expired:
            continue
        if not is_eligible(days_remaining, window):
            continue
        candidates += 1
        try:
            record = resolve_record(directory, account, days_remaining)
        except DirectoryError as e:
            skipped += 1
            message = f"Skipping {account.get('username') or account.get('dn')}: {e}"
            logger.warning(message)
            if stage is not None:
                stage.add_error(message)
            continue
        records.append(record)

    logger.info(f"{len(records)} of {candidates} eligible accounts resolved ({skipped} skipped)")
    return records, candidates, skipped


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def build_batches(records: Sequence[AccountRecord]) -> List[NotificationBatch]:
    """Group records by approver email, each group ordered by (days, username)."""
    if not records:
        return []

    df = pd.DataFrame([asdict(r) for r in records])
    df = df[df["approver_email"].fillna("").astype(str).str.strip() != ""]
    if df.empty:
        return []
    df = df.sort_values(["days_remaining", "username"], kind="mergesort")

    batches: List[NotificationBatch] = []
    for approver, group in df.groupby("approver_email", sort=True):
        batch_records = tuple(
            AccountRecord(
                username=row["username"],
                email=row["email"] if isinstance(row["email"], str) else None,
                days_remaining=int(row["days_remaining"]),
                approver_email=row["approver_email"],
            )
            for row in group.to_dict("records")
        )
        batches.append(NotificationBatch(approver_email=str(approver), records=batch_records))
    return batches


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def format_days(days_remaining: int) -> str:
    return "1 day" if days_remaining == 1 else f"{days_remaining} days"


def format_expiry_html(batch: NotificationBatch, helpdesk_email: str) -> str:
    helpdesk = html.escape(helpdesk_email)

    rows_html: List[str] = []
    for r in batch.records:
        color = "#fee2e2" if r.days_remaining < ESCALATION_DAYS else "#ffffff"
        rows_html.append(
            f"<tr style='background-color:{color};'>"
            f"<td style='padding:4px 8px;'>{html.escape(r.username)}</td>"
            f"<td style='padding:4px 8px;'>{html.escape(r.email or '-')}</td>"
            f"<td style='padding:4px 8px; text-align:right;'>{format_days(r.days_remaining)}</td>"
            "</tr>"
        )

    return f"""<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; font-size: 14px; color: #111827;">
    <h2 style="margin-bottom:4px;">Accounts expiring soon</h2>
    <p style="margin-top:0;">
      You are listed as the approver for the accounts below, which are due to expire.
      If an account is still needed, please contact <a href="mailto:{helpdesk}">{helpdesk}</a>
      to have its expiration date extended. Accounts that are no longer needed require no action.
    </p>
    <table cellspacing="0" cellpadding="0" style="border-collapse:collapse; border:1px solid #e5e7eb; margin-top:4px;">
      <thead>
        <tr style="background-color:#f3f4f6;">
          <th style="padding:4px 8px; text-align:left;">Username</th>
          <th style="padding:4px 8px; text-align:left;">Email Address</th>
          <th style="padding:4px 8px; text-align:right;">Expires In</th>
        </tr>
      </thead>
      <tbody>
        {''.join(rows_html)}
      </tbody>
    </table>
  </body>
</html>"""


def format_expiry_text(batch: NotificationBatch, helpdesk_email: str) -> str:
    lines: List[str] = []
    lines.append("Accounts expiring soon")
    lines.append("======================")
    lines.append("You are listed as the approver for the accounts below, which are due to expire.")
    lines.append(f"If an account is still needed, please contact {helpdesk_email} to have it extended.")
    lines.append("")

    header = f"{'Username':<24} {'Email Address':<40} {'Expires In':>10}"
    lines.append(header)
    lines.append("-" * len(header))
    for r in batch.records:
        lines.append(f"{r.username:<24} {(r.email or '-'):<40} {format_days(r.days_remaining):>10}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def dispatch_batches(
    batches: Sequence[NotificationBatch],
    send: SendFn,
    helpdesk_email: str,
    stage: Optional[StageResult] = None,
    dry_run: bool = False,
) -> Tuple[int, int]:
    """Send one email per batch. Returns (sent, failed)."""
    sent = 0
    failed = 0
    for batch in batches:
        html_body = format_expiry_html(batch, helpdesk_email)
        text_body = format_expiry_text(batch, helpdesk_email)
        if dry_run:
            logger.info(f"[dry-run] Would email {batch.approver_email} about {len(batch.records)} account(s)")
            logger.info(f"----- EMAIL BODY BEGIN -----\n{text_body}\n----- EMAIL BODY END -----")
            continue
        try:
            send(batch.approver_email, SUBJECT, html_body, text_body)
            sent += 1
        except MailError as e:
            failed += 1
            message = f"Email to {batch.approver_email} failed: {e}"
            logger.error(message)
            if stage is not None:
                stage.add_error(message)
    return sent, failed


# ---------------------------------------------------------------------------
# Run controller
# ---------------------------------------------------------------------------

def run(
    config: ExpiryNoticeConfig,
    window: int,
    directory_factory: Callable[[Any], Any] = DirectoryClient,
    send: Optional[SendFn] = None,
    dry_run: bool = False,
    today: Optional[date] = None,
) -> RunReport:
    """Collect, group, render and send. Never raises for expected failures."""
    report = RunReport(window=window, failing_stages=FAILING_STAGES)
    if send is None:
        send = partial(send_email, config.mail)

    setup = report.stage("setup")
    try:
        validate_window(window)
    except ValueError as e:
        logger.error(str(e))
        setup.fail(str(e))
        return report

    with contextlib.ExitStack() as stack:
        try:
            directory = stack.enter_context(directory_factory(config.directory))
        except DirectoryError as e:
            logger.error(f"Directory unavailable: {e}")
            setup.fail(f"Directory unavailable: {e}")
            return report

        collect = report.stage("collect")
        try:
            records, candidates, skipped = collect_expiring_accounts(
                directory, window, config, stage=collect, today=today
            )
        except DirectoryError as e:
            logger.error(f"Directory query failed: {e}")
            collect.fail(f"Directory query failed: {e}")
            return report
        report.candidates = candidates
        report.kept_records = len(records)
        report.skipped_records = skipped
        collect.detail = f"{len(records)} records, {skipped} skipped"

    aggregate = report.stage("aggregate")
    batches = build_batches(records)
    report.batches = len(batches)
    aggregate.detail = f"{len(batches)} batches"
    if not batches:
        logger.info("No expiring accounts to report")

    dispatch = report.stage("dispatch")
    sent, failed = dispatch_batches(batches, send, config.helpdesk_email, stage=dispatch, dry_run=dry_run)
    report.emails_sent = sent
    report.emails_failed = failed
    dispatch.detail = f"{sent} sent, {failed} failed"
    return report


def _window_arg(value: str) -> int:
    try:
        return validate_window(int(value))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Email approvers a summary of their accounts that are about to expire",
    )
    parser.add_argument(
        "--days",
        type=_window_arg,
        required=True,
        help=f"Look-ahead window in days ({MIN_WINDOW_DAYS}-{MAX_WINDOW_DAYS})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Render and log emails without sending")
    return parser


def run_job(argv: Optional[Sequence[str]] = None, env: Optional[Dict[str, str]] = None, **run_kwargs: Any) -> RunStatus:
    """Parse args, run inside a transcript, prune old logs, write the status file."""
    try:
        args = build_parser().parse_args(argv)
    except SystemExit:
        # A rejected invocation must not leave the previous run's status behind
        write_status(default_status_file(env), RunStatus.FAILURE)
        raise

    status = RunStatus.FAILURE
    try:
        config = load_expiry_notice_config(env)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        write_status(default_status_file(env), status)
        return status

    print(f"[{SCRIPT_NAME}] Starting (window={args.days}d, dry_run={args.dry_run})...")
    try:
        with transcript(config.log_dir, SCRIPT_NAME) as log_path:
            logger.info(f"Transcript: {log_path}")
            try:
                report = run(config, args.days, dry_run=args.dry_run, **run_kwargs)
            except Exception:
                logger.exception("Unhandled failure during account expiry run")
            else:
                status = report.status
                for s in report.stages:
                    for err in s.errors:
                        logger.info(f"[{s.stage}] {err}")
                if report.fatal:
                    logger.error(f"Run aborted: {report.summary()}")
                else:
                    logger.info(f"Run summary: {report.summary()}")
            prune_logs(config.log_dir, SCRIPT_NAME, config.log_retention_days)
    except OSError as e:
        logger.error(f"Could not open transcript in {config.log_dir}: {e}")
        status = RunStatus.FAILURE

    write_status(config.status_file, status)
    print(f"[{SCRIPT_NAME}] Done (status={status.name}).")
    return status


def main() -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    run_job()


if __name__ == "__main__":
    main()
