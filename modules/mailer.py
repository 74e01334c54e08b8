"""Outbound mail helpers.

Two transports are supported:
  - smtp:   submit through the internal relay (MAIL_RELAY_HOST)
  - resend: POST to the Resend HTTP API, same as the other daily emails
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

import requests

from config.settings import MailConfig

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class MailError(RuntimeError):
    """Raised when a message could not be submitted."""


def build_message(to: str, sender: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


def send_via_smtp(config: MailConfig, to: str, subject: str, html_body: str, text_body: str) -> None:
    msg = build_message(to, config.sender, subject, html_body, text_body)
    try:
        with smtplib.SMTP(config.relay_host, config.relay_port, timeout=config.timeout_seconds) as server:
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP submission to {to} via {config.relay_host} failed: {e}")
        raise MailError(f"SMTP submission to {to} failed: {e}") from e


def send_via_resend(config: MailConfig, to: str, subject: str, html_body: str, text_body: str) -> None:
    headers = {
        "Authorization": f"Bearer {config.resend_api_key}",
        "Content-Type": "application/json",
    }
    data = {
        "from": config.sender,
        "to": [to],
        "subject": subject,
        "text": text_body,
        "html": html_body,
    }
    try:
        resp = requests.post(RESEND_URL, json=data, headers=headers, timeout=config.timeout_seconds)
        resp.raise_for_status()
    except requests.RequestException as e:
        detail = ""
        if getattr(e, "response", None) is not None:
            detail = f" ({e.response.text})"
        logger.error(f"Resend submission to {to} failed: {e}{detail}")
        raise MailError(f"Resend submission to {to} failed: {e}") from e


def send_email(config: MailConfig, to: str, subject: str, html_body: str, text_body: str) -> None:
    """Submit one message through the configured transport.

    Raises:
        MailError: the transport rejected the message or was unreachable.
    """
    logger.info(f"Sending '{subject}' to {to} via {config.transport}")
    if config.transport == "resend":
        send_via_resend(config, to, subject, html_body, text_body)
    else:
        send_via_smtp(config, to, subject, html_body, text_body)
    logger.info(f"Email to {to} submitted")
