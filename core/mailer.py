# core/mailer.py
"""
Contact-form mail delivery.

Messages are sent through the configured SMTP relay with aiosmtplib. Senders
are rate limited per address with a sliding window kept in process memory,
which is enough for a single public-site instance.
"""
import time
from collections import deque
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from html import escape
from typing import Deque, Dict, List, Optional

import aiosmtplib

from core.config import Settings, settings as default_settings, logger as core_logger
from core.errors import RateLimitExceeded
from core.models import ContactRequest

logger = core_logger.getChild("Mailer")


@dataclass
class MailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ContactRateLimiter:
    """Allows `max_calls` messages per sender within `period` seconds."""

    def __init__(self, max_calls: int, period: float, clock=time.monotonic):
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._calls: Dict[str, Deque[float]] = {}

    def check(self, sender: str) -> None:
        """Records one attempt for `sender` or raises RateLimitExceeded."""
        key = sender.strip().lower()
        now = self._clock()
        # Basic cleanup of idle senders
        for other in [k for k, calls in self._calls.items() if calls and now - calls[-1] > self.period]:
            del self._calls[other]

        calls = self._calls.setdefault(key, deque())
        while calls and now - calls[0] >= self.period:
            calls.popleft()
        if len(calls) >= self.max_calls:
            retry_after = int(self.period - (now - calls[0])) + 1
            logger.warning(f"Contact rate limit exceeded for sender: {key}")
            raise RateLimitExceeded(f"Rate limit exceeded for {key}", retry_after=retry_after)
        calls.append(now)


class ContactMailer:
    """Sends contact-form submissions to the site owner."""

    def __init__(self, config: Settings = default_settings):
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.SMTP_HOST and self.config.SMTP_PORT and self.config.CONTACT_RECIPIENT)

    def validate(self) -> List[str]:
        errors = []
        if not self.config.SMTP_HOST:
            errors.append("SMTP_HOST is required")
        if not self.config.SMTP_PORT or self.config.SMTP_PORT <= 0:
            errors.append("SMTP_PORT must be a positive integer")
        if not self.config.CONTACT_RECIPIENT:
            errors.append("CONTACT_RECIPIENT is required")
        if self.config.SMTP_USE_TLS and self.config.SMTP_START_TLS:
            errors.append("Cannot use both implicit TLS and STARTTLS")
        return errors

    def build_message(self, contact: ContactRequest) -> MIMEMultipart:
        message = MIMEMultipart('alternative')
        message['From'] = formataddr(("Website contact form", self.config.CONTACT_FROM_EMAIL))
        message['To'] = self.config.CONTACT_RECIPIENT or ""
        message['Reply-To'] = formataddr((contact.name, contact.email))
        message['Subject'] = f"New enquiry from {contact.name}"
        message['Message-ID'] = make_msgid(domain=self.config.CONTACT_FROM_EMAIL.split("@")[-1])

        lines = [f"Name: {contact.name}", f"Email: {contact.email}"]
        if contact.phone:
            lines.append(f"Phone: {contact.phone}")
        text = "\n".join(lines) + "\n\n" + contact.message
        html = (
            "<p>" + "<br>".join(escape(line) for line in lines) + "</p>"
            + "<p>" + escape(contact.message).replace("\n", "<br>") + "</p>"
        )
        message.attach(MIMEText(text, 'plain', 'utf-8'))
        message.attach(MIMEText(html, 'html', 'utf-8'))
        return message

    async def send(self, contact: ContactRequest) -> MailResult:
        if not self.is_configured():
            logger.error("Contact mail requested but SMTP is not configured.")
            return MailResult(success=False, error="Email service not configured")

        message = self.build_message(contact)
        smtp_kwargs = {
            'hostname': self.config.SMTP_HOST,
            'port': self.config.SMTP_PORT,
            'use_tls': self.config.SMTP_USE_TLS,
            'start_tls': self.config.SMTP_START_TLS and not self.config.SMTP_USE_TLS,
        }
        try:
            async with aiosmtplib.SMTP(**smtp_kwargs) as smtp:
                if self.config.SMTP_USERNAME and self.config.SMTP_PASSWORD:
                    await smtp.login(self.config.SMTP_USERNAME, self.config.SMTP_PASSWORD)
                await smtp.send_message(message)
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send contact mail from {contact.email}: {e}", exc_info=True)
            return MailResult(success=False, error=f"SMTP sending failed: {e}")

        logger.info(f"Contact mail from {contact.email} delivered to {self.config.CONTACT_RECIPIENT}.")
        return MailResult(success=True, message_id=message['Message-ID'])
