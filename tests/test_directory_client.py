import logging
from datetime import datetime, timedelta, timezone

import pytest
from ldap3.core.exceptions import LDAPNoSuchObjectResult, LDAPSocketOpenError

from config.settings import DirectoryConfig
from modules import directory_client
from modules.directory_client import (
    DirectoryClient,
    DirectoryError,
    DirectoryLookupError,
    build_expiring_filter,
    datetime_to_filetime,
    filetime_to_datetime,
)

CONFIG = DirectoryConfig(
    server_uri="ldap://dc01.corp.local",
    bind_user="svc-expiry",
    bind_password="pw",
    search_base="DC=corp,DC=local",
    timeout_seconds=7,
)


def test_filetime_round_trip_known_value():
    # 2026-10-19 00:00:00 UTC
    moment = datetime(2026, 10, 19, tzinfo=timezone.utc)
    ticks = datetime_to_filetime(moment)
    assert ticks == 134368416000000000
    assert filetime_to_datetime(ticks) == moment
    assert filetime_to_datetime(str(ticks).encode()) == moment


@pytest.mark.parametrize("value", [0, b"0", "9223372036854775807", datetime(1601, 1, 1, tzinfo=timezone.utc)])
def test_never_expires_sentinels(value):
    assert filetime_to_datetime(value) is None


def test_filter_bounds():
    start = datetime(2026, 10, 12, tzinfo=timezone.utc)
    end = start + timedelta(days=38)
    f = build_expiring_filter(start, end)
    assert f.startswith("(&(objectCategory=person)(objectClass=user)")
    assert f"(accountExpires>={datetime_to_filetime(start)})" in f
    assert f"(accountExpires<={datetime_to_filetime(end)})" in f


class FakeServer:
    def __init__(self, uri, get_info=None, connect_timeout=None):
        self.uri = uri
        self.connect_timeout = connect_timeout


class FakeExtendStandard:
    def __init__(self, conn):
        self.conn = conn

    def paged_search(self, **kwargs):
        self.conn.paged_kwargs = kwargs
        if self.conn.search_error:
            raise self.conn.search_error
        return self.conn.paged_results


class FakeConnection:
    entries = {}
    paged_results = []
    search_error = None

    def __init__(self, server, user=None, password=None, auto_bind=False, receive_timeout=None,
                 raise_exceptions=False, read_only=False):
        self.server = server
        self.user = user
        self.receive_timeout = receive_timeout
        self.response = []
        self.unbound = False
        self.extend = type("Extend", (), {})()
        self.extend.standard = FakeExtendStandard(self)

    def search(self, search_base, search_filter, search_scope=None, attributes=None):
        if search_base not in self.entries:
            raise LDAPNoSuchObjectResult()
        attrs = self.entries[search_base]
        self.response = [
            {"type": "searchResEntry", "dn": search_base, "attributes": {a: attrs.get(a, []) for a in attributes}}
        ]
        return True

    def unbind(self):
        self.unbound = True


@pytest.fixture
def fake_ldap(monkeypatch):
    monkeypatch.setattr(directory_client, "Server", FakeServer)
    monkeypatch.setattr(directory_client, "Connection", FakeConnection)
    FakeConnection.entries = {}
    FakeConnection.paged_results = []
    FakeConnection.search_error = None
    return FakeConnection


def test_context_manager_binds_and_unbinds(fake_ldap):
    with DirectoryClient(CONFIG) as client:
        conn = client.conn
        assert conn.user == "svc-expiry"
        assert conn.receive_timeout == 7
        assert conn.server.connect_timeout == 7
    assert conn.unbound
    with pytest.raises(DirectoryError):
        client.conn


def test_bind_failure_raises_directory_error(monkeypatch):
    def refuse(*args, **kwargs):
        raise LDAPSocketOpenError("unable to open socket")

    monkeypatch.setattr(directory_client, "Server", FakeServer)
    monkeypatch.setattr(directory_client, "Connection", refuse)
    with pytest.raises(DirectoryError):
        DirectoryClient(CONFIG).connect()


def test_search_parses_entries_and_skips_references(fake_ldap):
    moment = datetime(2026, 10, 25, 5, 0, tzinfo=timezone.utc)
    fake_ldap.paged_results = [
        {
            "type": "searchResEntry",
            "dn": "CN=jdoe,OU=Contractors,DC=corp,DC=local",
            "attributes": {"sAMAccountName": "jdoe", "accountExpires": moment},
            "raw_attributes": {"accountExpires": [str(datetime_to_filetime(moment)).encode()]},
        },
        {
            "type": "searchResEntry",
            "dn": "CN=forever,OU=Contractors,DC=corp,DC=local",
            "attributes": {"sAMAccountName": "forever"},
            "raw_attributes": {"accountExpires": [b"9223372036854775807"]},
        },
        {"type": "searchResRef", "uri": ["ldap://other/DC=corp,DC=local"]},
    ]
    start = datetime(2026, 10, 12, tzinfo=timezone.utc)

    with DirectoryClient(CONFIG) as client:
        accounts = client.search_expiring_accounts(start, start + timedelta(days=31))
        kwargs = client.conn.paged_kwargs

    assert accounts == [
        {"username": "jdoe", "dn": "CN=jdoe,OU=Contractors,DC=corp,DC=local", "expires": moment}
    ]
    assert kwargs["search_base"] == "DC=corp,DC=local"
    assert kwargs["paged_size"] == directory_client.PAGE_SIZE


def test_search_failure_raises_directory_error(fake_ldap):
    fake_ldap.search_error = LDAPSocketOpenError("reset by peer")
    with DirectoryClient(CONFIG) as client:
        with pytest.raises(DirectoryError):
            client.search_expiring_accounts(datetime.now(timezone.utc), datetime.now(timezone.utc))


def test_attribute_lookups(fake_ldap):
    user = "CN=jdoe,OU=Contractors,DC=corp,DC=local"
    boss = "CN=boss,OU=Staff,DC=corp,DC=local"
    fake_ldap.entries = {
        user: {"mail": ["jdoe@corp.local"], "manager": [boss]},
        boss: {"mail": ["boss@corp.local"]},
    }
    with DirectoryClient(CONFIG) as client:
        assert client.get_account_email(user) == "jdoe@corp.local"
        assert client.get_manager_dn(user) == boss
        assert client.get_email(boss) == "boss@corp.local"


def test_lookup_failures(fake_ldap):
    user = "CN=nomgr,OU=Contractors,DC=corp,DC=local"
    fake_ldap.entries = {user: {"mail": []}}
    with DirectoryClient(CONFIG) as client:
        assert client.get_account_email(user) is None
        with pytest.raises(DirectoryLookupError):
            client.get_manager_dn(user)
        with pytest.raises(DirectoryLookupError):
            client.get_email(user)
        with pytest.raises(DirectoryLookupError):
            client.get_email("CN=missing,DC=corp,DC=local")


def test_search_skips_entry_with_unreadable_expiry(fake_ldap, caplog):
    moment = datetime(2026, 10, 25, 5, 0, tzinfo=timezone.utc)
    fake_ldap.paged_results = [
        {
            "type": "searchResEntry",
            "dn": "CN=broken,OU=Contractors,DC=corp,DC=local",
            "attributes": {"sAMAccountName": "broken"},
            "raw_attributes": {"accountExpires": [b"garbage"]},
        },
        {
            "type": "searchResEntry",
            "dn": "CN=noexpiry,OU=Contractors,DC=corp,DC=local",
            "attributes": {"sAMAccountName": "noexpiry"},
            "raw_attributes": {},
        },
        {
            "type": "searchResEntry",
            "dn": "CN=jdoe,OU=Contractors,DC=corp,DC=local",
            "attributes": {"sAMAccountName": "jdoe"},
            "raw_attributes": {"accountExpires": [str(datetime_to_filetime(moment)).encode()]},
        },
    ]
    start = datetime(2026, 10, 12, tzinfo=timezone.utc)

    with caplog.at_level(logging.WARNING):
        with DirectoryClient(CONFIG) as client:
            accounts = client.search_expiring_accounts(start, start + timedelta(days=31))

    assert [a["username"] for a in accounts] == ["jdoe"]
    assert "CN=broken,OU=Contractors,DC=corp,DC=local" in caplog.text
    assert "CN=noexpiry,OU=Contractors,DC=corp,DC=local" in caplog.text
