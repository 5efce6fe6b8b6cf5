from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class MailConfigError(Exception):
    pass


def build_message(subject: str, body_text: str, sender: str, recipient: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = recipient
    msg.set_content(body_text)
    return msg


def send_email(config: dict, *, to: str, subject: str, body: str) -> None:
    """
    Deliver one plain-text email.

    MAIL_BACKEND=console only logs the message (development/tests); smtp talks to SMTP_SERVER.
    Raises on delivery failure so callers can roll back whatever the mail announced.
    """
    sender = (config.get("EMAIL_FROM") or "").strip()
    if not to:
        raise MailConfigError("Recipient missing")
    msg = build_message(subject, body, sender, to)

    backend = (config.get("MAIL_BACKEND") or "console").strip().lower()
    if backend == "console":
        logger.info("MAIL (console) to=%s subject=%s\n%s", to, subject, body)
        return
    if backend != "smtp":
        raise MailConfigError(f"Unknown MAIL_BACKEND: {backend}")

    server_name = (config.get("SMTP_SERVER") or "").strip()
    if not server_name:
        raise MailConfigError("SMTP server not configured (SMTP_SERVER environment variable missing)")
    if not sender:
        raise MailConfigError("Email from address not configured (EMAIL_FROM environment variable missing)")

    port = int(config.get("SMTP_PORT") or 587)
    with smtplib.SMTP(server_name, port, timeout=30) as server:
        if config.get("SMTP_USE_TLS", True):
            server.starttls()
        username = (config.get("SMTP_USERNAME") or "").strip()
        if username:
            server.login(username, config.get("SMTP_PASSWORD") or "")
        server.send_message(msg)
    logger.info("MAIL sent to=%s subject=%s", to, subject)
