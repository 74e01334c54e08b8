from datetime import date, datetime, time, timedelta

import pytest

from config.settings import load_expiry_notice_config
from modules.directory_client import DirectoryError, DirectoryLookupError
from modules.mailer import MailError

TODAY = date(2026, 10, 19)
BASE_DN = "DC=corp,DC=local"


def make_account(username, days, ou="OU=Contractors", today=TODAY):
    expires = datetime.combine(today + timedelta(days=days), time(12, 0)).astimezone()
    return {"username": username, "dn": f"CN={username},{ou},{BASE_DN}", "expires": expires}


class FakeDirectory:
    """Stands in for DirectoryClient; also usable as its factory."""

    def __init__(self, accounts=(), emails=None, managers=None, fail_search=False, fail_bind=False):
        self.accounts = list(accounts)
        self.emails = dict(emails or {})
        self.managers = dict(managers or {})
        self.fail_search = fail_search
        self.fail_bind = fail_bind
        self.closed = False
        self.search_calls = []

    def __call__(self, config):
        return self

    def __enter__(self):
        if self.fail_bind:
            raise DirectoryError("bind refused")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    def search_expiring_accounts(self, start, end):
        self.search_calls.append((start, end))
        if self.fail_search:
            raise DirectoryError("search timed out")
        return list(self.accounts)

    def get_account_email(self, dn):
        return self.emails.get(dn)

    def get_manager_dn(self, dn):
        if dn not in self.managers:
            raise DirectoryLookupError(f"No manager set for {dn}")
        return self.managers[dn]

    def get_email(self, dn):
        if not self.emails.get(dn):
            raise DirectoryLookupError(f"No mail attribute on {dn}")
        return self.emails[dn]


class RecordingSender:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def __call__(self, to, subject, html_body, text_body):
        if to in self.fail_for:
            raise MailError(f"relay rejected {to}")
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})


@pytest.fixture
def env(tmp_path):
    return {
        "EXPIRY_LOG_DIR": str(tmp_path / "logs"),
        "EXPIRY_STATUS_FILE": str(tmp_path / "status" / "expiry.status"),
        "HELPDESK_EMAIL": "helpdesk@corp.local",
        "MAIL_RELAY_HOST": "relay.corp.local",
    }


@pytest.fixture
def config(env):
    return load_expiry_notice_config(env)


@pytest.fixture
def sender():
    return RecordingSender()
