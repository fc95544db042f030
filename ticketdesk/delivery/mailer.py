from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Dict, List, Optional, Sequence

import aiosmtplib

from ..config import EventDetails, Settings, SMTPProfile
from ..errors import NonTransientDeliveryError, TransientDeliveryError
from .templates import render

logger = logging.getLogger(__name__)


# ----------------------------
# Email Transport Interface
# ----------------------------
class EmailTransport(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> str:
        """Deliver one message; returns the message id."""

    async def verify(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class ConsoleTransport(EmailTransport):
    """Logs instead of sending. Used with EMAIL_BACKEND=console."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str) -> str:
        msg_id = make_msgid(domain="ticketdesk.local")
        self.sent.append({"to": to, "subject": subject, "id": msg_id})
        logger.info("console email to=%s subject=%r id=%s", to, subject, msg_id)
        return msg_id


class SMTPTransport(EmailTransport):
    """
    aiosmtplib client holding one reused connection.

    `verify()` walks the configured profiles (SSL 465, then STARTTLS 587
    unless a port is pinned) and keeps the first that connects and logs in.
    Any failure while sending drops the connection so the next send
    reconnects with the active profile.
    """

    def __init__(
        self,
        profiles: Sequence[SMTPProfile],
        *,
        username: str,
        password: str,
        from_name: str,
        from_address: str,
        timeout: float = 30.0,
    ) -> None:
        if not profiles:
            raise ValueError("at least one SMTP profile is required")
        self.profiles = list(profiles)
        self.active: SMTPProfile = self.profiles[0]
        self.username = username
        self.password = password
        self.sender = formataddr((from_name, from_address))
        self.timeout = timeout
        self._smtp: Optional[aiosmtplib.SMTP] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SMTPTransport":
        return cls(
            settings.smtp_profiles(),
            username=settings.email_user,
            password=settings.email_password,
            from_name=settings.email_from_name,
            from_address=settings.email_from_address,
            timeout=settings.email_timeout,
        )

    async def _open(self, profile: SMTPProfile) -> aiosmtplib.SMTP:
        smtp = aiosmtplib.SMTP(
            hostname=profile.host,
            port=profile.port,
            use_tls=profile.use_tls,
            start_tls=profile.start_tls,
            timeout=self.timeout,
        )
        await smtp.connect()
        if self.username:
            await smtp.login(self.username, self.password)
        return smtp

    async def _drop(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is not None and smtp.is_connected:
            try:
                await smtp.quit()
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
                smtp.close()

    async def verify(self) -> bool:
        async with self._lock:
            for profile in self.profiles:
                try:
                    smtp = await self._open(profile)
                except (aiosmtplib.SMTPException, OSError) as e:
                    logger.warning(
                        "smtp profile %s (%s:%d) failed: %s",
                        profile.name, profile.host, profile.port, e,
                    )
                    continue
                await self._drop()
                self._smtp = smtp
                self.active = profile
                logger.info(
                    "smtp transport ready via %s (%s:%d)",
                    profile.name, profile.host, profile.port,
                )
                return True
        logger.error("no smtp profile could connect")
        return False

    async def send(self, to: str, subject: str, html: str) -> str:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")

        async with self._lock:
            try:
                if self._smtp is None or not self._smtp.is_connected:
                    self._smtp = await self._open(self.active)
                await self._smtp.send_message(msg)
            except aiosmtplib.SMTPRecipientsRefused as e:
                await self._drop()
                raise NonTransientDeliveryError(f"recipient refused: {e}") from e
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
                await self._drop()
                raise TransientDeliveryError(f"smtp send failed: {e}") from e
        return msg["Message-ID"]

    async def close(self) -> None:
        async with self._lock:
            await self._drop()


def transport_from_settings(settings: Settings) -> EmailTransport:
    if settings.email_backend == "console":
        return ConsoleTransport()
    return SMTPTransport.from_settings(settings)


# ----------------------------
# Mailer: one method per customer-facing email
# ----------------------------
class Mailer:
    def __init__(self, transport: EmailTransport, event: EventDetails) -> None:
        self.transport = transport
        self.event = event

    async def _send(self, sale: Dict[str, Any], subject: str, template: str,
                    **ctx) -> str:
        try:
            to = sale["customerInfo"]["email"]
        except (KeyError, TypeError) as e:
            raise NonTransientDeliveryError("payload has no recipient") from e
        html = render(template, sale=sale, event=self.event, **ctx)
        return await self.transport.send(to, subject, html)

    async def transfer_completed(self, sale: Dict[str, Any]) -> str:
        return await self._send(
            sale,
            f"Transfer Confirmed - {self.event.name}",
            "transfer_completed.html",
        )

    async def ticket_email(self, sale: Dict[str, Any]) -> str:
        return await self._send(
            sale,
            f"Your Tickets - {self.event.name}",
            "ticket_email.html",
        )

    async def payment_rejection(
        self, sale: Dict[str, Any], reason: Optional[str] = None
    ) -> str:
        return await self._send(
            sale,
            f"Payment Verification Required - {self.event.name}",
            "payment_rejection.html",
            reason=reason,
        )

    async def reminder(
        self, sale: Dict[str, Any], suspicious: bool = False
    ) -> str:
        ref = sale.get("reference", "")
        subject = (
            f"URGENT: Payment Verification Required - {ref}"
            if suspicious
            else f"Payment Verification Reminder - {ref}"
        )
        return await self._send(
            sale, subject, "reminder.html", suspicious=suspicious
        )
