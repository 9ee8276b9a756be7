"""Mail transport for subscriber reports.

Plain-text mail via smtplib with STARTTLS. Failures raise NotifierError;
the runner logs them and moves on to the next subscriber (no retry here).
"""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from .config import CONFIG

logger = logging.getLogger(__name__)


class NotifierError(Exception):
    """Raised when a report could not be handed to the mail server."""


class MailTransport:
    def __init__(self,
                 smtp_host: Optional[str] = None,
                 smtp_port: Optional[int] = None,
                 smtp_user: Optional[str] = None,
                 smtp_pass: Optional[str] = None,
                 mail_from: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.smtp_host = smtp_host if smtp_host is not None else CONFIG['SMTP_HOST']
        self.smtp_port = smtp_port or CONFIG['SMTP_PORT']
        self.smtp_user = smtp_user if smtp_user is not None else CONFIG['SMTP_USER']
        self.smtp_pass = smtp_pass if smtp_pass is not None else CONFIG['SMTP_PASS']
        self.mail_from = mail_from if mail_from is not None else CONFIG['MAIL_FROM']
        self.timeout = timeout or CONFIG['SMTP_TIMEOUT']

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = self.mail_from
        msg['To'] = recipient
        msg.set_content(body)
        return msg

    def send(self, recipient: str, subject: str, body: str) -> None:
        if not self.smtp_host or not self.mail_from:
            raise NotifierError('mail transport not configured (SMTP_HOST / MAIL_FROM)')
        msg = self.build_message(recipient, subject, body)
        context = ssl.create_default_context()
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as s:
                s.starttls(context=context)
                if self.smtp_user and self.smtp_pass:
                    s.login(self.smtp_user, self.smtp_pass)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotifierError(f"send to {recipient} failed: {e}") from e
        logger.info('notifier.sent', extra={'event': 'report_sent', 'recipient': recipient})


__all__ = ['MailTransport', 'NotifierError']
