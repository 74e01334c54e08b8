"""Active Directory helper using ldap3.
Provides the handful of lookups the expiry-notice job needs: a paged search
for expiring accounts and single-entry attribute reads by DN.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ldap3 import BASE, NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from config.settings import DirectoryConfig

logger = logging.getLogger(__name__)

# accountExpires is a Windows FILETIME: 100ns intervals since 1601-01-01 UTC
_FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
_NEVER_EXPIRES = {0, 0x7FFFFFFFFFFFFFFF}

ACCOUNT_ATTRIBUTES = ["sAMAccountName", "distinguishedName", "accountExpires"]
PAGE_SIZE = 500


class DirectoryError(RuntimeError):
    """Raised when the directory cannot be reached or a search fails."""


class DirectoryLookupError(DirectoryError):
    """Raised when a single-entry lookup fails or returns nothing usable."""


def datetime_to_filetime(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _FILETIME_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def filetime_to_datetime(value: Any) -> Optional[datetime]:
    """Convert an accountExpires value to an aware UTC datetime.

    Returns None for the "never expires" sentinels. ldap3 may already have
    formatted the attribute as a datetime, so those pass through.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        # ldap3 formats the sentinels as the FILETIME epoch or 9999-12-31
        if value <= _FILETIME_EPOCH or value.year >= 9999:
            return None
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("ascii")
    ticks = int(value)
    if ticks in _NEVER_EXPIRES:
        return None
    return _FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def build_expiring_filter(start: datetime, end: datetime) -> str:
    """LDAP filter for user objects expiring in [start, end]."""
    return (
        "(&(objectCategory=person)(objectClass=user)"
        f"(accountExpires>={datetime_to_filetime(start)})"
        f"(accountExpires<={datetime_to_filetime(end)}))"
    )


def _first(attributes: Dict[str, Any], name: str) -> Optional[Any]:
    value = attributes.get(name)
    if isinstance(value, list):
        return value[0] if value else None
    return value or None


class DirectoryClient:
    """Thin wrapper around an ldap3 connection.

    Use as a context manager so the connection is unbound on every path::

        with DirectoryClient(cfg.directory) as directory:
            accounts = directory.search_expiring_accounts(start, end)
    """

    def __init__(self, config: DirectoryConfig):
        self.config = config
        self._conn: Optional[Connection] = None

    def __enter__(self) -> "DirectoryClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        server = Server(
            self.config.server_uri,
            get_info=NONE,
            connect_timeout=self.config.timeout_seconds,
        )
        try:
            self._conn = Connection(
                server,
                user=self.config.bind_user or None,
                password=self.config.bind_password or None,
                auto_bind=True,
                receive_timeout=self.config.timeout_seconds,
                raise_exceptions=True,
                read_only=True,
            )
        except LDAPException as e:
            logger.error(f"Bind to {self.config.server_uri} failed: {e}")
            raise DirectoryError(f"Bind to {self.config.server_uri} failed: {e}") from e
        logger.info(f"Bound to {self.config.server_uri}")

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.unbind()
            except LDAPException as e:
                logger.warning(f"Unbind failed: {e}")
            self._conn = None

    @property
    def conn(self) -> Connection:
        if self._conn is None:
            raise DirectoryError("DirectoryClient is not connected")
        return self._conn

    def search_expiring_accounts(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Return user accounts whose accountExpires lies in [start, end].

        Each item is ``{"username", "dn", "expires"}`` with ``expires`` an
        aware UTC datetime. Paging is delegated to ldap3.
        """
        search_filter = build_expiring_filter(start, end)
        try:
            results = self.conn.extend.standard.paged_search(
                search_base=self.config.search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=ACCOUNT_ATTRIBUTES,
                paged_size=PAGE_SIZE,
                generator=False,
            )
        except LDAPException as e:
            logger.error(f"Expiring-account search failed: {e}")
            raise DirectoryError(f"Expiring-account search failed: {e}") from e

        accounts: List[Dict[str, Any]] = []
        for item in results:
            if item.get("type") != "searchResEntry":
                continue
            attributes = item.get("attributes", {})
            raw = item.get("raw_attributes", {})
            raw_expires = _first(raw, "accountExpires")
            try:
                expires = filetime_to_datetime(
                    raw_expires if raw_expires is not None else _first(attributes, "accountExpires")
                )
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping {item.get('dn')}: unreadable accountExpires {raw_expires!r} ({e})")
                continue
            if expires is None:
                continue
            accounts.append(
                {
                    "username": str(_first(attributes, "sAMAccountName") or ""),
                    "dn": item.get("dn") or str(_first(attributes, "distinguishedName") or ""),
                    "expires": expires,
                }
            )
        logger.info(f"Directory returned {len(accounts)} expiring accounts")
        return accounts

    def _read_attribute(self, dn: str, attribute: str) -> Optional[str]:
        try:
            self.conn.search(
                search_base=dn,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=[attribute],
            )
        except LDAPException as e:
            raise DirectoryLookupError(f"Lookup of {attribute} for {dn} failed: {e}") from e
        for item in self.conn.response or []:
            if item.get("type") == "searchResEntry":
                value = _first(item.get("attributes", {}), attribute)
                return str(value) if value else None
        raise DirectoryLookupError(f"No directory entry for {dn}")

    def get_account_email(self, dn: str) -> Optional[str]:
        """The account's own mail attribute (may be None)."""
        return self._read_attribute(dn, "mail")

    def get_manager_dn(self, dn: str) -> str:
        manager = self._read_attribute(dn, "manager")
        if not manager:
            raise DirectoryLookupError(f"No manager set for {dn}")
        return manager

    def get_email(self, dn: str) -> str:
        """Mail attribute of an arbitrary entry; missing mail is an error."""
        mail = self._read_attribute(dn, "mail")
        if not mail:
            raise DirectoryLookupError(f"No mail attribute on {dn}")
        return mail
