"""Central configuration for the account-expiry notice job.
Override via environment variables where possible, and fall back to a local
JSON secrets file that is never committed to git.
"""
import os
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


REPO_ROOT = Path(__file__).resolve().parent.parent

MIN_WINDOW_DAYS = 0
MAX_WINDOW_DAYS = 30


class ConfigError(RuntimeError):
    """Raised when the job configuration is missing or invalid."""


def _load_local_secrets() -> dict:
    """Load optional local secrets from config/local_secrets.json (untracked).

    Shape is a simple key/value mapping, typically using the same keys as
    environment variables, e.g.:

        {
          "LDAP_BIND_PASSWORD": "…",
          "RESEND_API_KEY": "…"
        }
    """
    path = Path(__file__).with_name("local_secrets.json")
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        # A malformed secrets file is ignored; env vars still apply
        return {}
    return data if isinstance(data, dict) else {}


_LOCAL_SECRETS = _load_local_secrets()


def get_secret(name: str, default: str = "", env: Optional[Mapping[str, str]] = None) -> str:
    """Return a secret from env or local_secrets.json.

    Priority:
      1. Environment variable `name` (from `env` when given, else os.environ)
      2. Entry in config/local_secrets.json using the same key
      3. Provided default
    """
    if env is None:
        env = os.environ
    if name in env:
        return env[name]
    return _LOCAL_SECRETS.get(name, default)


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def default_log_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    if env is None:
        env = os.environ
    return Path(env.get("EXPIRY_LOG_DIR", str(REPO_ROOT / "logs")))


def default_status_file(env: Optional[Mapping[str, str]] = None) -> Path:
    """Status flag location; resolvable even when the rest of the config is broken."""
    if env is None:
        env = os.environ
    return Path(env.get("EXPIRY_STATUS_FILE", str(default_log_dir(env) / "account_expiry_notice.status")))


@dataclass(frozen=True)
class DirectoryConfig:
    """Connection settings for the LDAP directory."""

    server_uri: str
    bind_user: str
    bind_password: str
    search_base: str
    timeout_seconds: int = 30


@dataclass(frozen=True)
class MailConfig:
    """Mail transport settings."""

    transport: str
    relay_host: str
    relay_port: int
    sender: str
    resend_api_key: str = ""
    timeout_seconds: int = 30


@dataclass(frozen=True)
class ExpiryNoticeConfig:
    """Everything the account-expiry notice run needs, validated once at startup."""

    directory: DirectoryConfig
    mail: MailConfig
    helpdesk_email: str
    category_marker: str
    log_dir: Path
    status_file: Path
    include_expired: bool = True
    expired_lookback_days: int = 7
    log_retention_days: int = 7


def load_expiry_notice_config(env: Optional[Mapping[str, str]] = None) -> ExpiryNoticeConfig:
    """Build :class:`ExpiryNoticeConfig` from the environment.

    Args:
        env: Optional mapping used instead of ``os.environ`` (tests).

    Raises:
        ConfigError: when a value is malformed or a required value is empty.
    """
    if env is None:
        env = os.environ

    helpdesk_email = env.get("HELPDESK_EMAIL", "helpdesk@corp.local").strip()
    if "@" not in helpdesk_email:
        raise ConfigError(f"HELPDESK_EMAIL must be an email address, got {helpdesk_email!r}")

    directory = DirectoryConfig(
        server_uri=env.get("LDAP_SERVER_URI", "ldaps://dc01.corp.local"),
        bind_user=env.get("LDAP_BIND_USER", ""),
        bind_password=get_secret("LDAP_BIND_PASSWORD", env=env),
        search_base=env.get("LDAP_SEARCH_BASE", "DC=corp,DC=local"),
        timeout_seconds=_get_int(env, "LDAP_TIMEOUT_SECONDS", 30, minimum=1),
    )
    if not directory.server_uri or not directory.search_base:
        raise ConfigError("LDAP_SERVER_URI and LDAP_SEARCH_BASE are required")

    transport = env.get("MAIL_TRANSPORT", "smtp").strip().lower()
    if transport not in ("smtp", "resend"):
        raise ConfigError(f"MAIL_TRANSPORT must be 'smtp' or 'resend', got {transport!r}")

    mail = MailConfig(
        transport=transport,
        relay_host=env.get("MAIL_RELAY_HOST", "smtp.corp.local"),
        relay_port=_get_int(env, "MAIL_RELAY_PORT", 25, minimum=1),
        sender=helpdesk_email,
        resend_api_key=get_secret("RESEND_API_KEY", env=env),
        timeout_seconds=_get_int(env, "MAIL_TIMEOUT_SECONDS", 30, minimum=1),
    )
    if transport == "smtp" and not mail.relay_host:
        raise ConfigError("MAIL_RELAY_HOST is required for the smtp transport")
    if transport == "resend" and not mail.resend_api_key:
        raise ConfigError("RESEND_API_KEY is required for the resend transport")

    category_marker = env.get("EXPIRY_CATEGORY_MARKER", "OU=Contractors").strip()
    if not category_marker:
        raise ConfigError("EXPIRY_CATEGORY_MARKER must not be empty")

    log_dir = default_log_dir(env)
    status_file = default_status_file(env)

    return ExpiryNoticeConfig(
        directory=directory,
        mail=mail,
        helpdesk_email=helpdesk_email,
        category_marker=category_marker,
        log_dir=log_dir,
        status_file=status_file,
        include_expired=_get_bool(env, "EXPIRY_INCLUDE_EXPIRED", True),
        expired_lookback_days=_get_int(env, "EXPIRY_EXPIRED_LOOKBACK_DAYS", 7),
        log_retention_days=_get_int(env, "EXPIRY_LOG_RETENTION_DAYS", 7, minimum=1),
    )
