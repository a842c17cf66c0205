"""Outbound notifications for password reset requests."""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol, Sequence
from urllib.parse import quote

from .config import MailSettings

logger = logging.getLogger("identity.notifications")

RESET_PATH = "/reset-password"


class NotificationError(RuntimeError):
    """Raised when a notification could not be delivered."""


class Notifier(Protocol):
    def send_password_reset(self, to: str, reset_url: str) -> None:
        ...


def build_reset_url(token: str, base_url: Optional[str], client_origins: Sequence[str] = ()) -> str:
    """Return the link a user follows to choose a new password."""

    base = (base_url or (client_origins[0] if client_origins else "") or "").rstrip("/")
    query = f"token={quote(token, safe='')}"
    return f"{base}{RESET_PATH}?{query}" if base else f"{RESET_PATH}?{query}"


def _compose_message(sender: str, to: str, subject: str, reset_url: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(
        "We received a request to reset your password.\n\n"
        f"Reset link: {reset_url}\n\n"
        "If you did not request this, you can ignore this email."
    )
    message.add_alternative(
        "<p>We received a request to reset your password.</p>\n"
        f'<p><a href="{reset_url}">Reset your password</a></p>\n'
        "<p>If you did not request this, you can ignore this email.</p>\n",
        subtype="html",
    )
    return message


class SMTPNotifier:
    """Sends reset links over SMTP."""

    def __init__(self, settings: MailSettings) -> None:
        if not settings.host or not settings.sender:
            raise ValueError("SMTP is enabled but the mail host or sender address is missing")
        self._settings = settings

    def _connect(self) -> smtplib.SMTP:
        settings = self._settings
        if settings.use_ssl:
            return smtplib.SMTP_SSL(host=settings.host or "", port=settings.port, timeout=settings.timeout)
        return smtplib.SMTP(host=settings.host or "", port=settings.port, timeout=settings.timeout)

    def send_password_reset(self, to: str, reset_url: str) -> None:
        settings = self._settings
        message = _compose_message(settings.sender or "", to, settings.subject, reset_url)
        try:
            with self._connect() as smtp:
                if settings.starttls and not settings.use_ssl:
                    smtp.starttls()
                if settings.username:
                    smtp.login(settings.username, settings.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"Failed to send password reset email to {to}: {exc}") from exc
        logger.info("Password reset email sent to %s", to)


class LoggingNotifier:
    """Used when mail delivery is disabled. Records the destination only."""

    def send_password_reset(self, to: str, reset_url: str) -> None:
        logger.info("Mail delivery disabled; skipping password reset email to %s", to)


def build_notifier(settings: MailSettings) -> Notifier:
    if settings.enabled:
        return SMTPNotifier(settings)
    return LoggingNotifier()


__all__ = [
    "LoggingNotifier",
    "NotificationError",
    "Notifier",
    "SMTPNotifier",
    "build_notifier",
    "build_reset_url",
]
