"""Account notification emails."""

from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Protocol

from mortiscope.core.logging import get_logger
from mortiscope.core.models.app import MailConfig

logger = get_logger('mailer')


class Mailer(Protocol):
    async def send_account_deletion_scheduled(self, email: str, grace_days: int) -> None: ...

    async def send_goodbye(self, email: str, name: str | None) -> None: ...


def deletion_scheduled_message(email: str, grace_days: int) -> tuple[str, str]:
    subject = 'Your MortiScope account is scheduled for deletion'
    body = (
        'Hello,\n\n'
        f'Your MortiScope account ({email}) will be permanently deleted in '
        f'{grace_days} days.\n'
        'Sign in before then to cancel the deletion and keep your cases.\n\n'
        'The MortiScope team\n'
    )
    return subject, body


def goodbye_message(name: str | None) -> tuple[str, str]:
    subject = 'Your MortiScope account has been deleted'
    body = (
        f'Hello {name or "there"},\n\n'
        'Your MortiScope account and all of its cases have been permanently deleted.\n'
        'Thank you for using MortiScope.\n\n'
        'The MortiScope team\n'
    )
    return subject, body


class SmtpMailer:
    """Sends plain-text mail over SMTP on a worker thread."""

    def __init__(self, config: MailConfig) -> None:
        self.config = config

    async def send_account_deletion_scheduled(self, email: str, grace_days: int) -> None:
        subject, body = deletion_scheduled_message(email, grace_days)
        await self._send(email, subject, body)

    async def send_goodbye(self, email: str, name: str | None) -> None:
        subject, body = goodbye_message(name)
        await self._send(email, subject, body)

    async def _send(self, receiver: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg['From'] = self.config.from_address
        msg['To'] = receiver
        msg['Subject'] = subject
        msg.set_content(body)
        await asyncio.to_thread(self._deliver, msg)
        logger.info(f"Email '{subject}' sent to {receiver}")

    def _deliver(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.config.host, self.config.port, timeout=30) as smtp:
            if self.config.use_tls:
                smtp.starttls()
            if self.config.username and self.config.password:
                smtp.login(self.config.username, self.config.password)
            smtp.send_message(msg)


class LogMailer:
    """Mailer used when no SMTP server is configured: logs instead of sending."""

    async def send_account_deletion_scheduled(self, email: str, grace_days: int) -> None:
        subject, _ = deletion_scheduled_message(email, grace_days)
        logger.info(f"Mail disabled, not sending '{subject}' to {email}")

    async def send_goodbye(self, email: str, name: str | None) -> None:
        subject, _ = goodbye_message(name)
        logger.info(f"Mail disabled, not sending '{subject}' to {email}")
